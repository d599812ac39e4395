from __future__ import annotations

import random
import time
from typing import Callable, Optional, Union

from persistoken.logging import get_logger
from persistoken.service.crypto_providers import (
    CryptoProvider,
    Sha512,
    build_provider,
    is_reversible,
)
from persistoken.service.errors import GenerationUnavailable

logger = get_logger(__name__)

DEFAULT_RANDOM_DRAW_COUNT = 10


def resolve_token_provider(
    provider: Union[CryptoProvider, str, None], *, aes_key: Optional[str] = None
) -> CryptoProvider:
    """Return the provider used to harden tokens.

    A provider that can ``decrypt`` is replaced by the default ``Sha512``
    digest; a token must never allow recovery of its input.
    """
    if provider is None:
        return Sha512()
    if isinstance(provider, str):
        try:
            provider = build_provider(provider, aes_key=aes_key)
        except KeyError as exc:
            raise GenerationUnavailable(
                f"unknown crypto provider: {provider}", detail={"provider": provider}
            ) from exc
    if is_reversible(provider):
        logger.warning(
            "token_provider_reversible_fallback",
            configured=type(provider).__name__,
            using="Sha512",
        )
        return Sha512()
    if not callable(getattr(provider, "encrypt", None)):
        raise GenerationUnavailable(
            "crypto provider does not implement encrypt()",
            detail={"provider": type(provider).__name__},
        )
    return provider


class TokenGenerator:
    """Produce fresh, opaque persistence tokens.

    The input is a nanosecond timestamp followed by ``random_draw_count``
    independent draws from the operating system's CSPRNG; the timestamp only
    widens the input, the draws carry the entropy. The concatenation is then
    passed through a one-way provider so nothing about it survives in the
    token.
    """

    def __init__(
        self,
        crypto_provider: Union[CryptoProvider, str, None] = None,
        *,
        random_draw_count: int = DEFAULT_RANDOM_DRAW_COUNT,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = time.time_ns,
        aes_key: Optional[str] = None,
    ) -> None:
        if random_draw_count < 1:
            raise GenerationUnavailable(
                "random_draw_count must be at least 1",
                detail={"random_draw_count": random_draw_count},
            )
        self.provider = resolve_token_provider(crypto_provider, aes_key=aes_key)
        self.random_draw_count = random_draw_count
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    def _material(self) -> str:
        draws = "".join(repr(self._rng.random()) for _ in range(self.random_draw_count))
        return f"{self._clock()}{draws}"

    def generate(self) -> str:
        try:
            material = self._material()
        except Exception as exc:
            logger.error("token_randomness_unavailable", error=str(exc))
            raise GenerationUnavailable("randomness source failed") from exc
        try:
            token = self.provider.encrypt(material)
        except Exception as exc:
            logger.error(
                "token_hardening_failed",
                provider=type(self.provider).__name__,
                error=str(exc),
            )
            raise GenerationUnavailable(
                "crypto provider failed to harden token",
                detail={"provider": type(self.provider).__name__},
            ) from exc
        if not isinstance(token, str) or not token:
            raise GenerationUnavailable(
                "crypto provider returned an empty token",
                detail={"provider": type(self.provider).__name__},
            )
        return token

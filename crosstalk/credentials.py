"""
Credential pools and rotation.

A ``CredentialPool`` is an ordered, non-empty list of interchangeable API keys
for one provider.  ``rotate`` runs an operation against each key in order,
starting from the first key on every call, until one succeeds:

    pool = CredentialPool(["key-a", "key-b"], provider="anthropic")
    text = await rotate(pool, lambda key: client.complete(prompt, key))

Attempts are strictly sequential.  If every key fails, ``ProviderExhaustedError``
is raised naming the pool size and the last underlying error; callers must not
retry further.
"""

from typing import Awaitable, Callable, Iterator, List, Sequence, TypeVar

from loguru import logger

from .errors import ConfigurationError, ProviderExhaustedError

T = TypeVar("T")


class CredentialPool:
    """Ordered, non-empty collection of interchangeable credentials."""

    def __init__(self, credentials: Sequence[str], provider: str = "provider"):
        keys = [c for c in credentials if c]
        if not keys:
            raise ConfigurationError(f"No credentials configured for {provider}")
        self._credentials: List[str] = keys
        self.provider = provider

    def __len__(self) -> int:
        return len(self._credentials)

    def __iter__(self) -> Iterator[str]:
        return iter(self._credentials)

    def __repr__(self) -> str:
        return f"CredentialPool(provider={self.provider!r}, size={len(self)})"


async def rotate(pool: CredentialPool, op: Callable[[str], Awaitable[T]]) -> T:
    """
    Try ``op`` with each credential of ``pool`` in order.

    Args:
        pool: Credential pool; iteration always starts at index 0.
        op:   Async callable taking one credential.  Any exception counts as
              a failure of that credential.

    Returns:
        The first successful result.

    Raises:
        ProviderExhaustedError: when every credential failed.
    """
    last_error: Exception = RuntimeError("no attempt made")
    for index, credential in enumerate(pool):
        try:
            result = await op(credential)
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.warning(
                f"{pool.provider}: credential #{index + 1}/{len(pool)} failed: {exc}"
            )
            continue
        if index > 0:
            logger.info(
                f"{pool.provider}: recovered on credential #{index + 1} after {index} failure(s)"
            )
        return result

    logger.error(f"{pool.provider}: all {len(pool)} credential(s) failed")
    raise ProviderExhaustedError(len(pool), last_error)

"""Tests for credential pools and rotation."""

import pytest

from crosstalk.credentials import CredentialPool, rotate
from crosstalk.errors import ConfigurationError, ProviderExhaustedError


class Recorder:
    """Operation that fails for every key in ``failing``."""

    def __init__(self, failing):
        self.failing = set(failing)
        self.attempts = []

    async def __call__(self, key):
        self.attempts.append(key)
        if key in self.failing:
            raise RuntimeError(f"rate limited on {key}")
        return f"ok:{key}"


class TestCredentialPool:
    def test_empty_pool_is_configuration_error(self):
        """A pool with no credentials is rejected up front."""
        with pytest.raises(ConfigurationError, match="anthropic"):
            CredentialPool([], provider="anthropic")

    def test_blank_entries_are_dropped(self):
        """Blank strings do not count as credentials."""
        pool = CredentialPool(["", "a", "", "b"])
        assert list(pool) == ["a", "b"]
        assert len(pool) == 2

    def test_only_blank_entries_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            CredentialPool(["", ""])

    def test_repr_does_not_leak_keys(self):
        pool = CredentialPool(["sk-secret-1"], provider="anthropic")
        assert "sk-secret-1" not in repr(pool)


class TestRotate:
    async def test_first_credential_success_makes_one_attempt(self):
        op = Recorder(failing=[])
        result = await rotate(CredentialPool(["a", "b", "c"]), op)
        assert result == "ok:a"
        assert op.attempts == ["a"]

    @pytest.mark.parametrize("first_good", [0, 1, 2, 3])
    async def test_early_success_attempts_exactly_i_plus_one(self, first_good):
        """If credential i is the first to succeed, exactly i+1 attempts are made."""
        keys = ["k0", "k1", "k2", "k3"]
        op = Recorder(failing=keys[:first_good])
        result = await rotate(CredentialPool(keys), op)
        assert result == f"ok:k{first_good}"
        assert op.attempts == keys[: first_good + 1]

    @pytest.mark.parametrize("k", [1, 2, 5])
    async def test_exhaustion_attempts_exactly_k_and_names_k(self, k):
        """All k credentials failing means k attempts and an error naming k."""
        keys = [f"k{i}" for i in range(k)]
        op = Recorder(failing=keys)
        with pytest.raises(ProviderExhaustedError) as excinfo:
            await rotate(CredentialPool(keys), op)
        assert op.attempts == keys
        assert excinfo.value.pool_size == k
        assert f"All {k} credential(s)" in str(excinfo.value)
        assert f"rate limited on k{k - 1}" in str(excinfo.value)

    async def test_every_call_starts_at_index_zero(self):
        """No stickiness: a later call tries the first key again."""
        op = Recorder(failing=["a"])
        pool = CredentialPool(["a", "b"])
        await rotate(pool, op)
        await rotate(pool, op)
        assert op.attempts == ["a", "b", "a", "b"]

"""
tests/test_vault.py -- Unit tests for the password-derived EncryptionVault.

Pure functions, no fixtures. PBKDF2 runs at the real 100k iteration floor,
so each encrypt/decrypt costs a few tens of milliseconds.

Coverage:
  - Salt shape (16 random bytes, hex)
  - Round trip, and fresh IV per encryption
  - Wrong password and tampered ciphertext fail closed with DecryptionFailed
  - InvalidFormat is raised before any key derivation
  - Explicit salt overrides the embedded one
  - Derived key buffers are zeroed
  - DecryptionFailed log line carries no secret material
"""

from __future__ import annotations

import logging

import pytest

from auth import vault as vault_module
from auth.vault import DecryptionFailed, EncryptionVault, InvalidFormat, _secure_zero


@pytest.fixture(scope="module")
def vault() -> EncryptionVault:
    return EncryptionVault()


class TestSalt:
    def test_salt_is_32_hex_chars(self) -> None:
        salt = EncryptionVault.generate_salt()
        assert len(salt) == 32
        int(salt, 16)  # raises if not hex

    def test_salts_are_unique(self) -> None:
        assert len({EncryptionVault.generate_salt() for _ in range(20)}) == 20


class TestRoundTrip:
    def test_decrypt_returns_original(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        assert vault.decrypt(blob, "pw", salt) == "tok-123"

    def test_serialization_has_three_hex_segments(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        parts = vault.encrypt("tok-123", "pw", salt).split(":")
        assert len(parts) == 3
        assert parts[0] == salt
        assert len(bytes.fromhex(parts[1])) == 12

    def test_same_input_gives_different_ciphertext(self, vault: EncryptionVault) -> None:
        """A fresh IV per call: same secret, password and salt never repeat ciphertext."""
        salt = vault.generate_salt()
        a = vault.encrypt("tok-123", "pw", salt)
        b = vault.encrypt("tok-123", "pw", salt)
        assert a != b
        assert vault.decrypt(a, "pw") == vault.decrypt(b, "pw") == "tok-123"

    def test_unicode_secret(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("clé-секрет-🔑", "pässwörd", salt)
        assert vault.decrypt(blob, "pässwörd", salt) == "clé-секрет-🔑"


class TestFailClosed:
    def test_wrong_password_raises(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        with pytest.raises(DecryptionFailed):
            vault.decrypt(blob, "wrong", salt)

    def test_tampered_ciphertext_raises(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        s, iv, ct = vault.encrypt("tok-123", "pw", salt).split(":")
        flipped = f"{int(ct[0], 16) ^ 1:x}" + ct[1:]
        with pytest.raises(DecryptionFailed):
            vault.decrypt(f"{s}:{iv}:{flipped}", "pw", salt)

    def test_non_hex_segment_raises_decryption_failed(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        with pytest.raises(DecryptionFailed):
            vault.decrypt(f"{salt}:zz:zz", "pw", salt)

    def test_wrong_salt_override_raises(self, vault: EncryptionVault) -> None:
        blob = vault.encrypt("tok-123", "pw", vault.generate_salt())
        with pytest.raises(DecryptionFailed):
            vault.decrypt(blob, "pw", vault.generate_salt())

    def test_failure_message_does_not_say_which_part_was_wrong(self, vault: EncryptionVault) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        with pytest.raises(DecryptionFailed) as excinfo:
            vault.decrypt(blob, "wrong", salt)
        assert excinfo.value.__cause__ is None
        assert excinfo.value.__suppress_context__ is True

    def test_failure_log_is_redacted(self, vault: EncryptionVault, caplog: pytest.LogCaptureFixture) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        with caplog.at_level(logging.WARNING, logger="supportdesk.auth.vault"):
            with pytest.raises(DecryptionFailed):
                vault.decrypt(blob, "wrong-password", salt)
        text = caplog.text
        assert "[redacted]" in text
        assert "wrong-password" not in text
        assert blob.split(":")[2] not in text


class TestInvalidFormat:
    @pytest.mark.parametrize("serialized", ["", "onlyone", "a:b", "a:b:c:d"])
    def test_wrong_segment_count(self, vault: EncryptionVault, serialized: str) -> None:
        with pytest.raises(InvalidFormat):
            vault.decrypt(serialized, "pw")

    def test_no_key_derived_for_bad_format(self, vault: EncryptionVault, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = []
        monkeypatch.setattr(vault, "derive_key", lambda *a: calls.append(a))
        with pytest.raises(InvalidFormat):
            vault.decrypt("a:b", "pw")
        assert calls == []


class TestSaltOverride:
    def test_explicit_salt_wins_over_embedded(self, vault: EncryptionVault) -> None:
        """Re-labelling the embedded salt does not matter when the caller supplies the real one."""
        salt = vault.generate_salt()
        _, iv, ct = vault.encrypt("tok-123", "pw", salt).split(":")
        relabelled = f"{vault.generate_salt()}:{iv}:{ct}"
        assert vault.decrypt(relabelled, "pw", salt) == "tok-123"
        with pytest.raises(DecryptionFailed):
            vault.decrypt(relabelled, "pw")


class TestKeyHygiene:
    def test_secure_zero_clears_buffer(self) -> None:
        buf = bytearray(b"\x01\x02\x03\x04")
        _secure_zero(buf)
        assert buf == bytearray(4)

    def test_derived_key_is_zeroed_after_decrypt(self, vault: EncryptionVault, monkeypatch: pytest.MonkeyPatch) -> None:
        salt = vault.generate_salt()
        blob = vault.encrypt("tok-123", "pw", salt)
        keys: list[bytearray] = []
        original = vault.derive_key

        def capture(password: str, s: str) -> bytearray:
            key = original(password, s)
            keys.append(key)
            return key

        monkeypatch.setattr(vault, "derive_key", capture)
        vault.decrypt(blob, "pw", salt)
        with pytest.raises(DecryptionFailed):
            vault.decrypt(blob, "nope", salt)
        assert len(keys) == 2
        assert all(k == bytearray(len(k)) for k in keys)

    def test_iteration_floor_enforced(self) -> None:
        with pytest.raises(ValueError):
            EncryptionVault(iterations=vault_module.DEFAULT_ITERATIONS - 1)

"""Tests for administrator password hashing."""

from __future__ import annotations

import base64
import hashlib
import sys
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberportal.security import PASSWORD_TOKEN_PREFIX, hash_password, issue_password_token, verify_password


def _legacy_hash(password: str, rounds: int = 1_000) -> str:
    salt = b"0123456789abcdef"
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return "pbkdf2_sha256${}${}${}".format(
        rounds,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


class PasswordHashingTests(unittest.TestCase):
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("supersecurepassword")
        self.assertTrue(hashed.startswith("$2b$"))
        self.assertTrue(verify_password("supersecurepassword", hashed))
        self.assertFalse(verify_password("incorrect", hashed))

    def test_hashes_are_salted(self) -> None:
        self.assertNotEqual(hash_password("samepassword"), hash_password("samepassword"))

    def test_legacy_pbkdf2_hashes_still_verify(self) -> None:
        hashed = _legacy_hash("imported-password")
        self.assertTrue(verify_password("imported-password", hashed))
        self.assertFalse(verify_password("imported-password ", hashed))

    def test_malformed_hashes_never_verify(self) -> None:
        self.assertFalse(verify_password("anything", ""))
        self.assertFalse(verify_password("anything", "bcrypt$whatever"))
        self.assertFalse(verify_password("anything", "pbkdf2_sha256$notanumber$AAAA$AAAA"))
        self.assertFalse(verify_password("anything", "pbkdf2_sha256$1000$%%%$AAAA"))
        self.assertFalse(verify_password("anything", "pbkdf2_sha256$0$AAAA$AAAA"))

    def test_empty_password_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            hash_password("")

    def test_password_tokens_are_unique(self) -> None:
        first = issue_password_token()
        self.assertTrue(first.startswith(PASSWORD_TOKEN_PREFIX))
        self.assertNotEqual(first, issue_password_token())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

import unittest

from meditrack.config import Settings, async_database_url
from meditrack.passwords import hash_password, verify_password


class ConfigTests(unittest.TestCase):
    def test_async_database_url(self):
        self.assertEqual(
            async_database_url("postgres://u:p@db/app"), "postgresql+asyncpg://u:p@db/app"
        )
        self.assertEqual(
            async_database_url("postgresql://u:p@db/app"),
            "postgresql+asyncpg://u:p@db/app",
        )
        self.assertEqual(
            async_database_url("sqlite+aiosqlite:///x.db"), "sqlite+aiosqlite:///x.db"
        )

    def test_google_oauth_enabled_needs_both_credentials(self):
        self.assertFalse(
            Settings(
                _env_file=None, google_client_id="id", google_client_secret=None
            ).google_oauth_enabled
        )
        self.assertTrue(
            Settings(
                _env_file=None, google_client_id="id", google_client_secret="secret"
            ).google_oauth_enabled
        )


class PasswordTests(unittest.TestCase):
    def test_hash_and_verify(self):
        hashed = hash_password("pw1", rounds=4)
        self.assertNotEqual(hashed, "pw1")
        self.assertTrue(verify_password("pw1", hashed))
        self.assertFalse(verify_password("wrong", hashed))

    def test_missing_hash_never_matches(self):
        self.assertFalse(verify_password("", None))
        self.assertFalse(verify_password("pw", ""))


if __name__ == "__main__":
    unittest.main()

"""
Environment configuration for the QuestNav config server.

All settings are read from environment variables on demand so tests and
operators can change them without restarting the interpreter.
"""
import os
from typing import Optional

DEFAULT_EXPECTED_REPO = "QuestNav/QuestNav"
DEFAULT_MAX_APK_SIZE_BYTES = 500 * 1024 * 1024  # 500 MiB
DEFAULT_FETCH_TIMEOUT_SECONDS = 120.0
DEFAULT_APK_STORAGE_DIR = "./data/apks"
DEFAULT_DATABASE_URL = "sqlite:///./data/questnav.db"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_MAX_CONCURRENT_DOWNLOADS = 4


class Config:
    """Application configuration backed by environment variables"""

    def __init__(self):
        self._warnings: list[str] = []

    def _warn(self, message: str):
        if message not in self._warnings:
            self._warnings.append(message)

    @property
    def is_production(self) -> bool:
        """Check if running in a production deployment"""
        return os.getenv("APP_ENV", "development").lower() == "production"

    def _get_int(self, name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            self._warn(f"{name}={raw!r} is not an integer - using default {default}")
            return default
        if value <= 0:
            self._warn(f"{name} must be positive - using default {default}")
            return default
        return value

    def _get_float(self, name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = float(raw)
        except ValueError:
            self._warn(f"{name}={raw!r} is not a number - using default {default}")
            return default
        if value <= 0:
            self._warn(f"{name} must be positive - using default {default}")
            return default
        return value

    def get_expected_repo(self) -> str:
        """Repository (owner/name) whose releases we track"""
        return os.getenv("QUESTNAV_REPO", DEFAULT_EXPECTED_REPO)

    def get_webhook_secret(self) -> Optional[str]:
        """Shared secret for GitHub webhook signatures"""
        return os.getenv("GITHUB_WEBHOOK_SECRET") or None

    def get_max_apk_size_bytes(self) -> int:
        return self._get_int("MAX_APK_SIZE_BYTES", DEFAULT_MAX_APK_SIZE_BYTES)

    def get_fetch_timeout_seconds(self) -> float:
        return self._get_float("APK_FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS)

    def get_apk_storage_dir(self) -> str:
        return os.getenv("APK_STORAGE_DIR", DEFAULT_APK_STORAGE_DIR)

    def get_database_url(self) -> str:
        """Get the database URL from environment"""
        return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    def get_github_api_url(self) -> str:
        return os.getenv("GITHUB_API_URL", DEFAULT_GITHUB_API_URL).rstrip("/")

    def get_github_token(self) -> Optional[str]:
        """Optional token to raise the GitHub API rate limit"""
        return os.getenv("GITHUB_TOKEN") or None

    def get_max_concurrent_downloads(self) -> int:
        return self._get_int("MAX_CONCURRENT_DOWNLOADS", DEFAULT_MAX_CONCURRENT_DOWNLOADS)

    def get_admin_key(self) -> Optional[str]:
        """Get the admin API key from environment"""
        return os.getenv("ADMIN_KEY") or None

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate that required configuration is present.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        self._warnings = []

        # Touch numeric settings so parse problems are collected as warnings
        self.get_max_apk_size_bytes()
        self.get_fetch_timeout_seconds()
        self.get_max_concurrent_downloads()
        warnings = list(self._warnings)

        if not self.get_webhook_secret():
            if self.is_production:
                errors.append("GITHUB_WEBHOOK_SECRET not set - webhook deliveries will be refused")
            else:
                warnings.append("GITHUB_WEBHOOK_SECRET not set - webhook deliveries will be refused")

        repo = self.get_expected_repo()
        if "/" not in repo:
            errors.append(f"QUESTNAV_REPO must be in owner/name form (got {repo!r})")

        admin_key = self.get_admin_key()
        if not admin_key:
            if self.is_production:
                errors.append("ADMIN_KEY not set - admin routes are disabled")
            else:
                warnings.append("ADMIN_KEY not set - using default development key (insecure)")
        elif len(admin_key) < 16:
            warnings.append("ADMIN_KEY should be at least 16 characters for security")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower() and self.is_production:
            warnings.append("SQLite database in production - make sure the data directory is persistent")

        if not self.get_github_token():
            warnings.append("GITHUB_TOKEN not set - backfill uses the unauthenticated API rate limit")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        """Print configuration summary for debugging"""
        print("\n" + "=" * 60)
        print("QuestNav Config Server")
        print("=" * 60)
        print(f"Environment: {'Production' if self.is_production else 'Development'}")
        print(f"Tracked repository: {self.get_expected_repo()}")
        print(f"Webhook secret: {'✓ Set' if self.get_webhook_secret() else '✗ Missing'}")
        print(f"APK storage: {self.get_apk_storage_dir()}")
        print(f"Max APK size: {self.get_max_apk_size_bytes()} bytes")
        print(f"Fetch timeout: {self.get_fetch_timeout_seconds()}s")
        print(f"Database: {self.get_database_url()}")

        is_valid, errors, warnings = self.validate()
        if is_valid:
            print("Status: ✓ All required configuration present")
            if warnings:
                print(f"Warnings: {len(warnings)} configuration warnings")
                for warning in warnings:
                    print(f"  - {warning}")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        print("=" * 60 + "\n")


# Global config instance
config = Config()

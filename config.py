import os
from typing import Mapping, Optional

STORAGE_BACKENDS = ("memory", "redis")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


class ServerConfig:
    """Configuration for the authorization server, read from the environment"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # Server configuration
        self.server_url = env.get("OAUTH_SERVER_URL", "http://localhost:8080").rstrip("/")
        self.host = env.get("HOST", "0.0.0.0")
        self.port = self._int(env, "PORT", 8080)

        # Storage configuration
        self.storage_backend = env.get("OAUTH_STORAGE_BACKEND", "memory").strip().lower()
        self.redis_url = env.get("REDIS_URL", "redis://localhost:6379")
        self.redis_encryption_key = env.get("REDIS_ENCRYPTION_KEY") or None

        # Credential lifetimes, seconds (fractions allowed)
        self.code_ttl = self._float(env, "OAUTH_CODE_TTL", 600)                    # 10 minutes
        self.access_token_ttl = self._float(env, "OAUTH_ACCESS_TOKEN_TTL", 3600)   # 1 hour
        self.refresh_token_ttl = self._float(env, "OAUTH_REFRESH_TOKEN_TTL", 2592000)  # 30 days

        # Client bootstrap
        self.clients_file = env.get("OAUTH_CLIENTS_FILE") or None

        # Cleanup configuration
        self.cleanup_interval = self._float(env, "OAUTH_CLEANUP_INTERVAL", 300)  # 5 minutes, 0 disables

        # Rate limiting configuration
        self.rate_limit_enabled = _parse_bool(env.get("RATE_LIMIT_ENABLED", "true"))
        self.rate_limit_trust_proxy = _parse_bool(env.get("RATE_LIMIT_TRUST_PROXY", "false"))

        # Logging configuration
        self.log_level = env.get("LOG_LEVEL", "INFO").strip().upper()
        self.log_format = env.get("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    @staticmethod
    def _int(env: Mapping[str, str], name: str, default: int) -> int:
        raw = env.get(name)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}")

    @staticmethod
    def _float(env: Mapping[str, str], name: str, default: float) -> float:
        raw = env.get(name)
        if raw is None or raw == "":
            return float(default)
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{name} must be a number of seconds, got {raw!r}")

    def _validate_config(self):
        """Validate configuration values"""
        if not self.server_url.startswith(("http://", "https://")):
            raise ValueError("OAUTH_SERVER_URL must start with http:// or https://")

        if not 1 <= self.port <= 65535:
            raise ValueError(f"PORT must be between 1 and 65535, got {self.port}")

        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError(f"OAUTH_STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}")

        for name, value in (
            ("OAUTH_CODE_TTL", self.code_ttl),
            ("OAUTH_ACCESS_TOKEN_TTL", self.access_token_ttl),
            ("OAUTH_REFRESH_TOKEN_TTL", self.refresh_token_ttl),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be positive")

        if self.cleanup_interval < 0:
            raise ValueError("OAUTH_CLEANUP_INTERVAL must not be negative")

        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    @property
    def uses_redis(self) -> bool:
        return self.storage_backend == "redis"

    @property
    def cleanup_enabled(self) -> bool:
        return self.cleanup_interval > 0

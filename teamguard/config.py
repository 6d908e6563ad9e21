from __future__ import annotations

import os
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./teamguard.db")
DATABASE_ECHO = _env_bool("DATABASE_ECHO", "false")

# Authentication
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Shared cache (Redis in multi-instance deployments, in-memory otherwise)
USE_REDIS = _env_bool("USE_REDIS", "false")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

PERMISSION_CACHE_TTL_SECONDS = int(os.getenv("PERMISSION_CACHE_TTL_SECONDS", str(5 * 60)))
POLICY_CACHE_TTL_SECONDS = int(os.getenv("POLICY_CACHE_TTL_SECONDS", str(10 * 60)))

# Vault approvals
APPROVAL_EXPIRY_HOURS = int(os.getenv("APPROVAL_EXPIRY_HOURS", "24"))

# Policy evaluation falls back to allow on internal errors unless disabled
POLICY_FAIL_OPEN = _env_bool("POLICY_FAIL_OPEN", "true")

SYSTEM_ROLES_PATH = Path(
    os.getenv("SYSTEM_ROLES_PATH", str(Path(__file__).parent / "rbac" / "system_roles.yaml"))
)

# Provisioning API keys
API_KEY_PREFIX = "2fas_"

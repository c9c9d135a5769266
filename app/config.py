"""Service configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

DEFAULT_UPLOAD_BADEXT = (
    "php",
    "php3",
    "php4",
    "php5",
    "pl",
    "cgi",
    "py",
    "asp",
    "cfm",
    "js",
    "vbs",
    "html",
    "htm",
    "phtml",
    "phar",
)


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip().lower().lstrip(".") for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class ServiceConfig:
    api_prefix: str = "/V8"
    list_max_limit: int = 1000
    upload_dir: str = "upload"
    upload_badext: tuple[str, ...] = DEFAULT_UPLOAD_BADEXT
    notes_module: str = "Notes"
    modules_file: str | None = None
    use_db: bool = False
    disable_auth: bool = False
    supabase_url: str = ""
    supabase_aud: str | None = None
    app_env: str = "dev"
    req_slow_ms: float = 250.0

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


def load_config() -> ServiceConfig:
    _load_env_file(ROOT / "app" / ".env")
    prefix = os.getenv("RECORDS_API_PREFIX", "/V8").strip().rstrip("/")
    return ServiceConfig(
        api_prefix=prefix,
        list_max_limit=int(os.getenv("RECORDS_LIST_MAX_LIMIT", "1000")),
        upload_dir=os.getenv("RECORDS_UPLOAD_DIR", "upload").strip() or "upload",
        upload_badext=_env_list("RECORDS_UPLOAD_BADEXT", DEFAULT_UPLOAD_BADEXT),
        notes_module=os.getenv("RECORDS_NOTES_MODULE", "Notes").strip() or "Notes",
        modules_file=os.getenv("RECORDS_MODULES_FILE", "").strip() or None,
        use_db=os.getenv("USE_DB", "").strip() == "1",
        disable_auth=_env_flag("RECORDS_DISABLE_AUTH"),
        supabase_url=os.getenv("SUPABASE_URL", "").strip(),
        supabase_aud=os.getenv("SUPABASE_JWT_AUD", "").strip() or None,
        app_env=os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev",
        req_slow_ms=float(os.getenv("RECORDS_REQ_SLOW_MS", "250")),
    )

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Tuple


# =========================
# env helpers
# =========================

def _env_str(name: str, default: str = "") -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> Tuple[str, ...]:
    raw = _env_str(name, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


# =========================
# config
# =========================

@dataclass(frozen=True)
class AppConfig:
    db_path: Path
    id_prefix: str = ""
    webui_url: str = ""
    search_enabled: bool = True
    cors_origins: Tuple[str, ...] = ("vscode-file://vscode-app",)
    log_level: str = "INFO"
    json_logs: bool = False

    @staticmethod
    def from_env() -> "AppConfig":
        # raw values from env
        db_raw = _env_str("GALLERY_DB", "./data/gallery.sqlite")
        log_level = _env_str("LOG_LEVEL", "INFO").upper()

        project_root = Path(__file__).resolve().parents[1]

        p = Path(db_raw).expanduser()
        if not p.is_absolute():
            p = (project_root / p).resolve()

        return AppConfig(
            db_path=p,
            id_prefix=_env_str("VSCODE_ID_PREFIX", ""),
            webui_url=_env_str("WEBUI_URL", ""),
            search_enabled=_env_bool("SEARCH_ENABLED", True),
            cors_origins=_env_list("CORS_ORIGINS", "vscode-file://vscode-app"),
            log_level=log_level,
            json_logs=_env_bool("JSON_LOGS", False),
        )


# =========================
# logging
# =========================

# LogRecord attributes set by the access/error hooks in core.app
_REQUEST_FIELDS = ("request_id", "remote_addr", "method", "path", "status", "duration_ms", "bytes", "ua", "extra")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in _REQUEST_FIELDS:
            v = getattr(record, k, None)
            if v is not None:
                payload[k] = v
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class _PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if record.name == "access":
            line += " %s %s %s %sms rid=%s" % (
                getattr(record, "method", "-"),
                getattr(record, "path", "-"),
                getattr(record, "status", "-"),
                getattr(record, "duration_ms", "-"),
                getattr(record, "request_id", "-"),
            )
        return line


def setup_logging(cfg: AppConfig) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.log_level, logging.INFO))

    # reset handlers (idempotent setup)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if cfg.json_logs:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_PlainFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)

    # sane defaults for noisy libs
    logging.getLogger("werkzeug").setLevel(logging.INFO)

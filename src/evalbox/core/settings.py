from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- listener (only used by the CLI) ----
    host: str = "0.0.0.0"
    port: int = 8080

    # ---- admission ----
    max_concurrent_evaluations: int = Field(16, ge=1)
    max_timeout_secs: float = Field(60.0, gt=0)
    # "request": one ceiling per batch; "global": one ceiling shared by all batches
    concurrency_scope: Literal["request", "global"] = "request"

    # ---- execution ----
    max_memory_bytes: int = Field(0, ge=0)  # 0 = no limit
    kill_grace_secs: float = Field(2.0, ge=0)
    max_output_bytes: int = Field(1024 * 1024, ge=0)
    runtimes: Dict[str, str] = {"python3": "python3"}

    log_level: str = "INFO"

    # env prefix EVALBOX_*
    model_config = SettingsConfigDict(env_prefix="EVALBOX_", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (FileNotFoundError, IsADirectoryError):
        return {}
    except yaml.YAMLError:
        # a broken config file must not take the service down; keep defaults
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(conf_file: Path | str | None = None, **overrides: Any) -> Settings:
    """
    Build settings from, lowest to highest priority:
    defaults, conf/evalbox.yaml (or $EVALBOX_CONF), EVALBOX_* env, explicit overrides.
    """
    path = Path(conf_file or os.environ.get("EVALBOX_CONF", "conf/evalbox.yaml"))
    file_values = {k: v for k, v in _read_yaml(path).items() if k in Settings.model_fields}

    # env wins over the file: only keep file values the environment does not set
    env_set = {
        name for name in Settings.model_fields
        if f"EVALBOX_{name}".upper() in {k.upper() for k in os.environ}
    }
    init = {k: v for k, v in file_values.items() if k not in env_set}
    init.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**init)

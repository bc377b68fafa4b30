from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

# env var -> field
ENV_VARS: Dict[str, str] = {
    "AGENTSCRIPT_COMMAND_TIMEOUT": "command_timeout_s",
    "AGENTSCRIPT_MCP_TIMEOUT": "mcp_timeout_s",
    "AGENTSCRIPT_STRICT": "strict",
    "AGENTSCRIPT_DRY_RUN": "dry_run",
    "AGENTSCRIPT_CACHE_DIR": "cache_dir",
    "AGENTSCRIPT_CACHE_TTL": "cache_ttl_s",
    "AGENTSCRIPT_AI_PROVIDER": "ai_provider",
    "AGENTSCRIPT_WORKDIR": "workdir",
}


class EngineConfig(BaseModel):
    """Engine settings. Defaults are usable without any environment."""
    model_config = ConfigDict(frozen=True)

    command_timeout_s: Optional[float] = Field(default=None, gt=0)
    mcp_timeout_s: float = Field(default=30.0, gt=0)
    strict: bool = False
    dry_run: bool = False
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".agentscript" / "cache")
    cache_ttl_s: int = Field(default=3600, ge=0)
    ai_provider: str = "auto"
    workdir: Path = Field(default_factory=Path.cwd)

    @field_validator("strict", "dry_run", mode="before")
    @classmethod
    def parse_flag(cls, v: Any) -> Any:
        if isinstance(v, str):
            low = v.strip().lower()
            if low in _TRUE:
                return True
            if low in _FALSE:
                return False
            raise ValueError(f"expected a boolean, got {v!r}")
        return v

    @field_validator("command_timeout_s", mode="before")
    @classmethod
    def empty_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("ai_provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower() or "auto"

    @field_validator("cache_dir", "workdir", mode="before")
    @classmethod
    def expand(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @property
    def cache_enabled(self) -> bool:
        return self.cache_ttl_s > 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "EngineConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for var, field_name in ENV_VARS.items():
            raw = env.get(var)
            if raw is not None:
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise ConfigError(f"Invalid configuration: {problems}") from e

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "DOCMEND_"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id_field: str = "_id"
    default_language: str = "en"
    statistics_ttl_seconds: float = Field(default=600.0, gt=0)
    log_level: LogLevel = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw.upper() if name == "log_level" else raw
        return cls.model_validate(values)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Settings":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(payload)

from __future__ import annotations

from enum import Enum
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from elp_bridge.exceptions import ConfigurationError

SETTINGS_VERSION = 1
SETTINGS_SECTION = "elpClient"


class TraceLevel(str, Enum):
    OFF = "off"
    MESSAGES = "messages"
    VERBOSE = "verbose"


class ClientSettings(BaseModel):
    """Versioned settings snapshot for the `elpClient` section.

    Field aliases are the camelCase keys users write in settings files.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    version: int = Field(SETTINGS_VERSION, ge=1, le=SETTINGS_VERSION)
    server_path: str = Field("", alias="serverPath")
    server_args: str = Field("server", alias="serverArgs")
    trace_level: TraceLevel = Field(TraceLevel.OFF, alias="traceLevel")
    handshake_timeout: float = Field(10.0, alias="handshakeTimeout", gt=0)
    request_timeout: float = Field(30.0, alias="requestTimeout", gt=0)
    shutdown_timeout: float = Field(5.0, alias="shutdownTimeout", gt=0)


_FIELD_KEYS: dict[str, str] = {
    name: (info.alias or name) for name, info in ClientSettings.model_fields.items()
}


def _setting_key(loc: tuple[object, ...]) -> str:
    if not loc:
        return ""
    head = str(loc[0])
    return _FIELD_KEYS.get(head, head)


def validate_settings(
    raw: Mapping[str, object] | ClientSettings | None,
) -> tuple[ClientSettings, list[ConfigurationError]]:
    """Validate a raw settings table, substituting defaults for bad keys.

    Never raises: each invalid key is dropped and reported as a
    ConfigurationError so the caller can log it.
    """
    if isinstance(raw, ClientSettings):
        return raw, []
    problems: list[ConfigurationError] = []
    if raw is None:
        return ClientSettings(), problems
    if not isinstance(raw, Mapping):
        problems.append(
            ConfigurationError(
                f"{SETTINGS_SECTION} settings must be a table, got {type(raw).__name__}; "
                "using defaults"
            )
        )
        return ClientSettings(), problems
    data = {str(key): value for key, value in raw.items()}
    try:
        return ClientSettings.model_validate(data), problems
    except ValidationError as exc:
        for error in exc.errors():
            loc = tuple(error.get("loc", ()))
            key = _setting_key(loc)
            problems.append(
                ConfigurationError(
                    f"invalid setting {SETTINGS_SECTION}.{key}: {error.get('msg', 'invalid value')}; "
                    "using default",
                    key=key,
                )
            )
            data.pop(key, None)
            if loc:
                data.pop(str(loc[0]), None)
    try:
        return ClientSettings.model_validate(data), problems
    except ValidationError:
        problems.append(
            ConfigurationError(f"{SETTINGS_SECTION} settings rejected; using defaults")
        )
        return ClientSettings(), problems

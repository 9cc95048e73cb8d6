"""
Configuration loading utilities with Pydantic validation.
"""

from collections import abc
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcp_filter_proxy.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0


class WrapperConfig(BaseModel):
    """
    Configuration for one filter proxy instance.

    Attributes:
        upstream_target: Where the wrapped server lives (local file, npm:/pypi: package,
            or module:<dotted.name>)
        allowed_tools: Names of the upstream tools exposed downstream
        connect_timeout: Seconds allowed for spawning the upstream and completing the handshake
        upstream_env: Optional environment variables for a spawned upstream process
        server_name: Name the proxy reports to downstream clients
    """

    upstream_target: str = Field(
        ...,
        description="Location of the upstream MCP server",
        min_length=1,
    )
    allowed_tools: FrozenSet[str] = Field(
        ...,
        description="Tool names exposed to downstream clients",
    )
    connect_timeout: float = Field(
        default=DEFAULT_CONNECT_TIMEOUT,
        description="Seconds to wait for the upstream handshake",
        gt=0,
    )
    upstream_env: Optional[Dict[str, str]] = Field(
        default=None,
        description="Optional environment variables for a spawned upstream process",
    )
    server_name: str = Field(
        default="mcp-filter-proxy",
        description="Server name reported to downstream clients",
        min_length=1,
    )

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "upstream_target": "./servers/calculator.py",
                "allowed_tools": ["add", "hello"],
            }
        },
    )

    @field_validator("upstream_target")
    @classmethod
    def validate_upstream_target(cls, v: str) -> str:
        """Validate and trim the upstream target."""
        v = v.strip()
        if not v:
            raise ValueError("Upstream target cannot be empty or whitespace only")
        return v

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def validate_allowed_tools(cls, v: Iterable[str]) -> FrozenSet[str]:
        """Trim tool names, reject blanks and collapse duplicates."""
        if v is None:
            raise ValueError("allowed_tools is required")
        if isinstance(v, str) or not isinstance(v, abc.Iterable):
            raise ValueError("allowed_tools must be a list of tool names")
        names = set()
        for name in v:
            if not isinstance(name, str):
                raise ValueError(f"Tool names must be strings, got: {type(name).__name__}")
            name = name.strip()
            if not name:
                raise ValueError("Tool names cannot be empty or whitespace only")
            names.add(name)
        if not names:
            raise ValueError("At least one tool name must be allowed")
        return frozenset(names)

    @classmethod
    def from_cli(
        cls,
        upstream_target: str,
        tool_names: Iterable[str],
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> "WrapperConfig":
        """Build a configuration from positional command-line arguments."""
        return cls(
            upstream_target=upstream_target,
            allowed_tools=list(tool_names),
            connect_timeout=connect_timeout,
        )


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        field_path = " -> ".join(str(loc) for loc in item["loc"]) or "<root>"
        lines.append(f"  {field_path}: {item['msg']}")
    return "Configuration validation errors:\n" + "\n".join(lines)


def load_config(config_path: str) -> WrapperConfig:
    """
    Load and validate a filter proxy configuration from a YAML file.

    The file uses the keys ``upstream``, ``allowed_tools`` and optionally
    ``connect_timeout``, ``env`` and ``server_name``.

    Args:
        config_path: Path to the configuration file

    Returns:
        The validated configuration

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid YAML or fails validation
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file {config_path} not found")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        error_msg = f"YAML parsing error in {config_path}: {e}"
        logger.error(error_msg)
        raise ValueError(error_msg) from e

    if raw_config is None:
        raise ValueError(f"Config file {config_path} is empty")
    if not isinstance(raw_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    data = {
        "upstream_target": raw_config.get("upstream"),
        "allowed_tools": raw_config.get("allowed_tools"),
    }
    if "connect_timeout" in raw_config:
        data["connect_timeout"] = raw_config["connect_timeout"]
    if "env" in raw_config:
        data["upstream_env"] = raw_config["env"]
    if "server_name" in raw_config:
        data["server_name"] = raw_config["server_name"]

    try:
        config = WrapperConfig.model_validate(data)
    except ValidationError as e:
        error_message = _format_validation_error(e)
        logger.error(error_message)
        raise ValueError(f"Invalid configuration in {config_path}:\n{error_message}") from e

    logger.debug(
        f"Loaded configuration for {config.upstream_target} "
        f"with {len(config.allowed_tools)} allowed tool(s)"
    )
    return config

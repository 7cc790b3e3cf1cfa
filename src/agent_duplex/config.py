"""
Configuration models for agent-duplex.

Provides a flexible configuration system that can be loaded from YAML files,
plain dictionaries or environment variables, or constructed programmatically.

Example YAML:
    model:
      model: gpt-4o-mini
      system_prompt: "You are a helpful assistant."
    session:
      busy_policy: queue
      heartbeat_interval: 30
      heartbeat_timeout: 10
    context:
      policy: summarizing
      summary_ratio: 0.3
      preserve_recent_messages: 10
      cadence: every-3-iterations
    executor:
      mode: concurrent
      tool_timeout: 60
    loop:
      max_iterations: 20
    throttle:
      max_retries: 5
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv

from agent_duplex.context import ManagementCadence

BusyPolicy = Literal["queue", "reject"]
ContextPolicy = Literal["null", "sliding_window", "summarizing"]
ExecutorMode = Literal["concurrent", "sequential"]

_BUSY_POLICIES = ("queue", "reject")
_CONTEXT_POLICIES = ("null", "sliding_window", "summarizing")
_EXECUTOR_MODES = ("concurrent", "sequential")


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}; got {value!r}")


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Drop keys the dataclass does not declare."""
    names = cls.__dataclass_fields__  # type: ignore[attr-defined]
    return {k: v for k, v in data.items() if k in names}


@dataclass
class ModelConfig:
    """Settings for the default OpenAI-compatible model client."""

    model: str = "gpt-4o-mini"
    base_url: str | None = None  # Defaults to OPENAI_BASE_URL
    api_key: str | None = None  # Defaults to OPENAI_API_KEY
    temperature: float = 1.0
    max_tokens: int = 4096
    system_prompt: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelConfig:
        return cls(**_known(cls, data))


@dataclass
class SessionConfig:
    """Connection lifecycle settings for a bidirectional session."""

    max_message_size: int = 1_048_576  # bytes, per inbound message
    busy_policy: BusyPolicy = "queue"
    max_queued_chats: int = 16
    heartbeat_interval: float = 30.0  # seconds of inactivity before ping; 0 = off
    heartbeat_timeout: float = 10.0  # seconds to wait for pong
    shutdown_grace: float = 10.0

    def __post_init__(self) -> None:
        _check_choice("busy_policy", self.busy_policy, _BUSY_POLICIES)
        if self.max_message_size <= 0:
            raise ValueError("max_message_size must be positive")
        if self.heartbeat_interval < 0 or self.heartbeat_timeout <= 0:
            raise ValueError("heartbeat_interval must be >= 0 and heartbeat_timeout > 0")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        return cls(**_known(cls, data))


@dataclass
class ContextConfig:
    """Context window management policy."""

    policy: ContextPolicy = "sliding_window"
    window_size: int = 40
    overflow_trim: int = 2
    summary_ratio: float = 0.3
    preserve_recent_messages: int = 10
    max_tokens: int | None = None
    summarization_prompt: str | None = None
    cadence: str = "disabled"  # disabled | every-iteration | every-N-iterations

    def __post_init__(self) -> None:
        _check_choice("policy", self.policy, _CONTEXT_POLICIES)
        if self.window_size <= 0:
            raise ValueError("window_size must be positive")
        if self.preserve_recent_messages < 0:
            raise ValueError("preserve_recent_messages must be >= 0")
        ManagementCadence.parse(self.cadence)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextConfig:
        return cls(**_known(cls, data))


@dataclass
class ExecutorConfig:
    """Tool executor selection."""

    mode: ExecutorMode = "concurrent"
    tool_timeout: float | None = None  # seconds per tool call
    max_concurrency: int | None = None  # None = unbounded

    def __post_init__(self) -> None:
        _check_choice("mode", self.mode, _EXECUTOR_MODES)
        if self.max_concurrency is not None and self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutorConfig:
        return cls(**_known(cls, data))


@dataclass
class LoopConfig:
    """Turn loop limits."""

    max_iterations: int = 20  # model calls per turn
    model_timeout: float | None = 300.0  # seconds per model call

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopConfig:
        return cls(**_known(cls, data))


@dataclass
class ThrottleConfig:
    """Retry, rate limiting and circuit breaking for model calls."""

    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0
    rate_limit_capacity: int | None = None  # None = no token bucket
    rate_limit_refill: float = 1.0  # tokens per second
    circuit_failure_threshold: int | None = None  # None = no breaker
    circuit_recovery_timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThrottleConfig:
        return cls(**_known(cls, data))


@dataclass
class ServerConfig:
    """Network binding for the WebSocket server."""

    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None  # SQLite repository; None = in-memory

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerConfig:
        return cls(**_known(cls, data))


@dataclass
class AgentDuplexConfig:
    """Root configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentDuplexConfig:
        """Create config from a dictionary."""
        return cls(
            model=ModelConfig.from_dict(data.get("model") or {}),
            session=SessionConfig.from_dict(data.get("session") or {}),
            context=ContextConfig.from_dict(data.get("context") or {}),
            executor=ExecutorConfig.from_dict(data.get("executor") or {}),
            loop=LoopConfig.from_dict(data.get("loop") or {}),
            throttle=ThrottleConfig.from_dict(data.get("throttle") or {}),
            server=ServerConfig.from_dict(data.get("server") or {}),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> AgentDuplexConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> AgentDuplexConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls, path: Path | None = None) -> AgentDuplexConfig:
        """
        Create config from environment variables.

        Loads ``.env`` first. ``AGENT_DUPLEX_CONFIG`` (or *path*) names an
        optional YAML file; ``OPENAI_*`` variables fill in the model section.
        """
        load_dotenv()
        config_path = path or os.environ.get("AGENT_DUPLEX_CONFIG")
        config = cls.from_yaml(Path(config_path)) if config_path else cls()

        model = config.model
        model.base_url = model.base_url or os.environ.get("OPENAI_BASE_URL")
        model.api_key = model.api_key or os.environ.get("OPENAI_API_KEY")
        if os.environ.get("AGENT_DUPLEX_MODEL"):
            model.model = os.environ["AGENT_DUPLEX_MODEL"]
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return asdict(self)

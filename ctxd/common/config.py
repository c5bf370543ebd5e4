"""
Configuration Management for ctxd

Loads configuration from ~/.ctxd/config.json, the project's
.context/daemon.json and environment variables.
"""

import os
import json
import getpass
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Default config paths
CONFIG_DIR = Path.home() / ".ctxd"
CONFIG_PATH = CONFIG_DIR / "config.json"
COLD_STORE_DIR = CONFIG_DIR / "cold"

CONTEXT_DIRNAME = ".context"
PROJECT_CONFIG_NAME = "daemon.json"

DEFAULT_IGNORE = [
    "*.env*",
    "*.pem",
    "*.key",
    "**/node_modules/**",
    "**/.git/**",
    "**/.context/**",
]

DEFAULT_REDACT_PATTERNS = ["api[_-]?key", "secret", "password", "token"]


@dataclass
class ToolConfig:
    """Per-tool capture settings"""
    enabled: bool = False
    log_path: str = ""
    ignore: List[str] = field(default_factory=list)


def _default_tools() -> Dict[str, ToolConfig]:
    return {
        "claude-code": ToolConfig(enabled=True, log_path="~/.claude/projects"),
        "cursor": ToolConfig(),
        "copilot": ToolConfig(),
    }


@dataclass
class CaptureConfig:
    """Event capture configuration"""
    enabled: bool = True
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    tools: Dict[str, ToolConfig] = field(default_factory=_default_tools)
    min_prompt_length: int = 10  # prompts this short or shorter are dropped
    buffer_size: int = 10000


@dataclass
class CorrelationConfig:
    """Correlation window configuration"""
    pre_window_seconds: float = 30.0
    post_delay_seconds: float = 2.0
    max_pending_files: int = 1000


@dataclass
class InferenceConfig:
    """Intent inference backend configuration"""
    provider: str = "rule"  # rule | local | anthropic | openai | google
    local_model: str = "llama3.2"
    ollama_host: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"
    timeout_seconds: float = 10.0
    rule_confidence: float = 0.7
    fallback_discount: float = 0.2
    min_confidence: float = 0.5


@dataclass
class LinkerConfig:
    """Commit linking weights and thresholds"""
    time_weight: float = 0.3
    file_weight: float = 0.5
    message_weight: float = 0.2
    accept_threshold: float = 0.7
    horizon_seconds: float = 3600.0
    max_candidates: int = 5
    recent_commit_limit: int = 200


@dataclass
class ADRConfig:
    """Decision record synthesis configuration"""
    auto_generate: bool = True
    threshold: float = 0.8
    dedup_threshold: float = 0.6


@dataclass
class IndexConfig:
    """Semantic index / context.lock configuration"""
    token_budget: int = 4000
    project_reserve: int = 150
    stack_reserve: int = 100
    constraints_reserve: int = 400
    decisions_share: float = 0.45
    concepts_share: float = 0.25
    recent_share: float = 0.15
    half_life_days: float = 14.0
    recent_window_days: float = 7.0
    update_interval_seconds: float = 3600.0
    project_name: str = ""
    project_description: str = ""


@dataclass
class RetentionConfig:
    """Hot/warm/cold tier horizons"""
    hot_days: int = 90
    warm_days: int = 365
    cold_dir: str = ""
    orphan_days: int = 90  # pending orphans older than this leave the review queue


@dataclass
class PrivacyConfig:
    """Redaction configuration"""
    redact_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_REDACT_PATTERNS))
    replacement: str = "[REDACTED]"


@dataclass
class ServerConfig:
    """Ingest server configuration"""
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class CtxdConfig:
    """Main ctxd configuration"""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    linker: LinkerConfig = field(default_factory=LinkerConfig)
    adr: ADRConfig = field(default_factory=ADRConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    project_root: str = ""
    author: str = ""
    _env_sourced_keys: set = field(default_factory=set, repr=False)


@dataclass(frozen=True)
class ContextPaths:
    """Filesystem layout of a project's .context/ directory."""
    root: Path

    @classmethod
    def for_project(cls, project_root) -> "ContextPaths":
        return cls(Path(project_root).expanduser().resolve())

    @property
    def context_dir(self) -> Path:
        return self.root / CONTEXT_DIRNAME

    @property
    def config_path(self) -> Path:
        return self.context_dir / PROJECT_CONFIG_NAME

    @property
    def intents_dir(self) -> Path:
        return self.context_dir / "intents"

    @property
    def events_dir(self) -> Path:
        return self.context_dir / "events"

    @property
    def decisions_dir(self) -> Path:
        return self.context_dir / "decisions"

    @property
    def constraints_path(self) -> Path:
        return self.context_dir / "constraints.json"

    @property
    def orphans_path(self) -> Path:
        return self.context_dir / "orphans.json"

    @property
    def lock_path(self) -> Path:
        return self.context_dir / "context.lock"

    @property
    def warm_dir(self) -> Path:
        return self.context_dir / "archive" / "warm"

    @property
    def cold_dir(self) -> Path:
        return self.context_dir / "archive" / "cold"

    @property
    def orphan_archive_dir(self) -> Path:
        return self.context_dir / "archive" / "orphans"


def _parse_tool_config(data: dict) -> ToolConfig:
    return ToolConfig(
        enabled=data.get("enabled", False),
        log_path=data.get("log_path", ""),
        ignore=list(data.get("ignore", [])),
    )


def _parse_capture_config(data: dict) -> CaptureConfig:
    """Parse capture section from config dict"""
    capture_data = data.get("capture", {})
    tools = _default_tools()
    for name, tool_data in capture_data.get("tools", {}).items():
        tools[name] = _parse_tool_config(tool_data or {})
    return CaptureConfig(
        enabled=capture_data.get("enabled", True),
        ignore=list(capture_data.get("ignore", DEFAULT_IGNORE)),
        tools=tools,
        min_prompt_length=capture_data.get("min_prompt_length", 10),
        buffer_size=capture_data.get("buffer_size", 10000),
    )


def _parse_correlation_config(data: dict) -> CorrelationConfig:
    """Parse correlation section from config dict"""
    corr_data = data.get("correlation", {})
    return CorrelationConfig(
        pre_window_seconds=float(corr_data.get("pre_window_seconds", 30.0)),
        post_delay_seconds=float(corr_data.get("post_delay_seconds", 2.0)),
        max_pending_files=corr_data.get("max_pending_files", 1000),
    )


def _parse_inference_config(data: dict) -> InferenceConfig:
    """Parse inference section from config dict"""
    inf_data = data.get("inference", {})
    defaults = InferenceConfig()
    return InferenceConfig(
        provider=inf_data.get("provider", defaults.provider),
        local_model=inf_data.get("local_model") or inf_data.get("model", defaults.local_model),
        ollama_host=inf_data.get("ollama_host", ""),
        anthropic_api_key=inf_data.get("anthropic_api_key", ""),
        anthropic_model=inf_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=inf_data.get("openai_api_key", ""),
        openai_model=inf_data.get("openai_model", defaults.openai_model),
        google_api_key=inf_data.get("google_api_key", ""),
        google_model=inf_data.get("google_model", defaults.google_model),
        timeout_seconds=float(inf_data.get("timeout_seconds", defaults.timeout_seconds)),
        rule_confidence=float(inf_data.get("rule_confidence", defaults.rule_confidence)),
        fallback_discount=float(inf_data.get("fallback_discount", defaults.fallback_discount)),
        min_confidence=float(inf_data.get("min_confidence", defaults.min_confidence)),
    )


def _parse_linker_config(data: dict) -> LinkerConfig:
    """Parse linker section from config dict"""
    linker_data = data.get("linker", {})
    weights = linker_data.get("weights", {})
    return LinkerConfig(
        time_weight=float(weights.get("time_proximity", 0.3)),
        file_weight=float(weights.get("file_overlap", 0.5)),
        message_weight=float(weights.get("message_similarity", 0.2)),
        accept_threshold=float(linker_data.get("accept_threshold", 0.7)),
        horizon_seconds=float(linker_data.get("horizon_seconds", 3600.0)),
        max_candidates=linker_data.get("max_candidates", 5),
        recent_commit_limit=linker_data.get("recent_commit_limit", 200),
    )


def _parse_adr_config(data: dict) -> ADRConfig:
    """Parse adr section from config dict"""
    adr_data = data.get("adr", {})
    return ADRConfig(
        auto_generate=adr_data.get("auto_generate", True),
        threshold=float(adr_data.get("threshold", 0.8)),
        dedup_threshold=float(adr_data.get("dedup_threshold", 0.6)),
    )


def _parse_index_config(data: dict) -> IndexConfig:
    """Parse index section from config dict.

    Accepts the older ``lock`` section name as well.
    """
    index_data = data.get("index") or data.get("lock") or {}
    defaults = IndexConfig()
    return IndexConfig(
        token_budget=int(index_data.get("token_budget", defaults.token_budget)),
        project_reserve=int(index_data.get("project_reserve", defaults.project_reserve)),
        stack_reserve=int(index_data.get("stack_reserve", defaults.stack_reserve)),
        constraints_reserve=int(index_data.get("constraints_reserve", defaults.constraints_reserve)),
        decisions_share=float(index_data.get("decisions_share", defaults.decisions_share)),
        concepts_share=float(index_data.get("concepts_share", defaults.concepts_share)),
        recent_share=float(index_data.get("recent_share", defaults.recent_share)),
        half_life_days=float(index_data.get("half_life_days", defaults.half_life_days)),
        recent_window_days=float(index_data.get("recent_window_days", defaults.recent_window_days)),
        update_interval_seconds=float(
            index_data.get("update_interval_seconds", defaults.update_interval_seconds)
        ),
        project_name=index_data.get("project_name", ""),
        project_description=index_data.get("project_description", ""),
    )


def _parse_retention_config(data: dict) -> RetentionConfig:
    """Parse retention section from config dict"""
    retention_data = data.get("retention", {})
    return RetentionConfig(
        hot_days=int(retention_data.get("hot_days", 90)),
        warm_days=int(retention_data.get("warm_days", 365)),
        cold_dir=retention_data.get("cold_dir", ""),
        orphan_days=int(retention_data.get("orphan_days", 90)),
    )


def _parse_privacy_config(data: dict) -> PrivacyConfig:
    """Parse privacy section from config dict"""
    privacy_data = data.get("privacy", {})
    return PrivacyConfig(
        redact_patterns=list(privacy_data.get("redact_patterns", DEFAULT_REDACT_PATTERNS)),
        replacement=privacy_data.get("replacement", "[REDACTED]"),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    server_data = data.get("server", {})
    return ServerConfig(
        host=server_data.get("host", "127.0.0.1"),
        port=int(server_data.get("port", 8765)),
    )


def _merge_sections(base: dict, override: dict) -> dict:
    """Shallow-merge two config dicts one section deep."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _read_json(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, IOError) as e:
        print(f"[Config] Warning: Failed to load config file {path}: {e}")
        return {}


def _default_author() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def load_config(project_root: Optional[Path] = None) -> CtxdConfig:
    """
    Load configuration from files and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Project config (<root>/.context/daemon.json)
    3. User config (~/.ctxd/config.json)
    4. Default values
    """
    config = CtxdConfig()

    root = project_root or os.getenv("CTXD_PROJECT_ROOT") or Path.cwd()
    paths = ContextPaths.for_project(root)

    data = _merge_sections(_read_json(CONFIG_PATH), _read_json(paths.config_path))
    if data:
        config.capture = _parse_capture_config(data)
        config.correlation = _parse_correlation_config(data)
        config.inference = _parse_inference_config(data)
        config.linker = _parse_linker_config(data)
        config.adr = _parse_adr_config(data)
        config.index = _parse_index_config(data)
        config.retention = _parse_retention_config(data)
        config.privacy = _parse_privacy_config(data)
        config.server = _parse_server_config(data)
        config.author = data.get("author", "")

    config.project_root = str(paths.root)

    # Environment variable overrides
    _env_inference_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "OPENAI_API_KEY": "openai_api_key",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "OLLAMA_HOST": "ollama_host",
        "CTXD_INFERENCE_PROVIDER": "provider",
        "CTXD_INFERENCE_MODEL": "local_model",
    }
    for env_var, attr in _env_inference_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.inference, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("CTXD_ADR_THRESHOLD"):
        config.adr.threshold = float(os.getenv("CTXD_ADR_THRESHOLD"))
    if os.getenv("CTXD_TOKEN_BUDGET"):
        config.index.token_budget = int(os.getenv("CTXD_TOKEN_BUDGET"))
    if os.getenv("CTXD_SERVER_PORT"):
        config.server.port = int(os.getenv("CTXD_SERVER_PORT"))
    if os.getenv("CTXD_AUTHOR"):
        config.author = os.getenv("CTXD_AUTHOR")

    if not config.author:
        config.author = _default_author()

    return config


def _config_to_dict(config: CtxdConfig) -> dict:
    env_sourced = getattr(config, "_env_sourced_keys", set())

    # Blank out API keys that came from the environment
    _api_key_fields = {"anthropic_api_key", "openai_api_key", "google_api_key"}
    inference_section = {
        "provider": config.inference.provider,
        "local_model": config.inference.local_model,
        "ollama_host": config.inference.ollama_host,
        "anthropic_api_key": config.inference.anthropic_api_key,
        "anthropic_model": config.inference.anthropic_model,
        "openai_api_key": config.inference.openai_api_key,
        "openai_model": config.inference.openai_model,
        "google_api_key": config.inference.google_api_key,
        "google_model": config.inference.google_model,
        "timeout_seconds": config.inference.timeout_seconds,
        "rule_confidence": config.inference.rule_confidence,
        "fallback_discount": config.inference.fallback_discount,
        "min_confidence": config.inference.min_confidence,
    }
    for key in _api_key_fields:
        if key in env_sourced:
            inference_section[key] = ""

    return {
        "capture": {
            "enabled": config.capture.enabled,
            "ignore": config.capture.ignore,
            "tools": {
                name: {"enabled": tool.enabled, "log_path": tool.log_path, "ignore": tool.ignore}
                for name, tool in config.capture.tools.items()
            },
            "min_prompt_length": config.capture.min_prompt_length,
            "buffer_size": config.capture.buffer_size,
        },
        "correlation": {
            "pre_window_seconds": config.correlation.pre_window_seconds,
            "post_delay_seconds": config.correlation.post_delay_seconds,
            "max_pending_files": config.correlation.max_pending_files,
        },
        "inference": inference_section,
        "linker": {
            "weights": {
                "time_proximity": config.linker.time_weight,
                "file_overlap": config.linker.file_weight,
                "message_similarity": config.linker.message_weight,
            },
            "accept_threshold": config.linker.accept_threshold,
            "horizon_seconds": config.linker.horizon_seconds,
            "max_candidates": config.linker.max_candidates,
            "recent_commit_limit": config.linker.recent_commit_limit,
        },
        "adr": {
            "auto_generate": config.adr.auto_generate,
            "threshold": config.adr.threshold,
            "dedup_threshold": config.adr.dedup_threshold,
        },
        "index": {
            "token_budget": config.index.token_budget,
            "project_reserve": config.index.project_reserve,
            "stack_reserve": config.index.stack_reserve,
            "constraints_reserve": config.index.constraints_reserve,
            "decisions_share": config.index.decisions_share,
            "concepts_share": config.index.concepts_share,
            "recent_share": config.index.recent_share,
            "half_life_days": config.index.half_life_days,
            "recent_window_days": config.index.recent_window_days,
            "update_interval_seconds": config.index.update_interval_seconds,
            "project_name": config.index.project_name,
            "project_description": config.index.project_description,
        },
        "retention": {
            "hot_days": config.retention.hot_days,
            "warm_days": config.retention.warm_days,
            "cold_dir": config.retention.cold_dir,
            "orphan_days": config.retention.orphan_days,
        },
        "privacy": {
            "redact_patterns": config.privacy.redact_patterns,
            "replacement": config.privacy.replacement,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
        "author": config.author,
    }


def save_config(config: CtxdConfig, path: Optional[Path] = None) -> Path:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    target = path or ContextPaths.for_project(config.project_root or Path.cwd()).config_path
    target.parent.mkdir(parents=True, exist_ok=True)

    with open(target, "w") as f:
        json.dump(_config_to_dict(config), f, indent=2)

    # Set secure permissions
    target.chmod(0o600)
    return target


def ensure_directories(paths: ContextPaths) -> None:
    """Create the .context/ layout if missing"""
    for directory in (
        paths.context_dir,
        paths.intents_dir,
        paths.events_dir,
        paths.decisions_dir,
        paths.warm_dir,
        paths.cold_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)

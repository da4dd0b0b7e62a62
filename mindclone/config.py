"""
Store configuration.

Each store directory holds ``mindclone.toml`` next to the database:

    [store]
    version = 1
    created = "2025-01-01T00:00:00+00:00"

    [inference]
    name = "gemini"
    model = "gemini-2.5-flash"

    [gateway]
    timeout = 60.0
    tag_context_limit = 20

The file is written once, on first use, with a provider picked from the
API keys present in the environment. MINDCLONE_PROVIDER, MINDCLONE_MODEL and
MINDCLONE_TIMEOUT override the file for a single run.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w

CONFIG_FILENAME = "mindclone.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "memories.db"

DEFAULT_TIMEOUT = 60.0
DEFAULT_TAG_CONTEXT_LIMIT = 20

# (provider, default model, env vars that select it), in priority order
_PROVIDER_KEYS = (
    ("gemini", "gemini-2.5-flash", ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_CLOUD_PROJECT")),
    ("anthropic", "claude-haiku-4-5-20251001", ("ANTHROPIC_API_KEY",)),
    ("openai", "gpt-4.1-mini", ("MINDCLONE_OPENAI_API_KEY", "OPENAI_API_KEY")),
)


@dataclass
class ProviderConfig:
    """Inference provider name plus constructor parameters."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    timeout: float = DEFAULT_TIMEOUT
    tag_context_limit: int = DEFAULT_TAG_CONTEXT_LIMIT

    def validate(self, source: str) -> None:
        if self.timeout <= 0:
            raise ValueError(f"{source}: [gateway] timeout must be positive, got {self.timeout}")
        if self.tag_context_limit < 0:
            raise ValueError(
                f"{source}: [gateway] tag_context_limit must not be negative, "
                f"got {self.tag_context_limit}"
            )


@dataclass
class StoreConfig:
    """Everything read from one store's ``mindclone.toml``."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    inference: ProviderConfig = field(default_factory=lambda: ProviderConfig("noop"))
    gateway: GatewayConfig = field(default_factory=GatewayConfig)

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / DATABASE_FILENAME


def get_default_store_path() -> Path:
    """MINDCLONE_STORE_PATH if set, else ~/.mindclone."""
    env_path = os.environ.get("MINDCLONE_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".mindclone"


def detect_default_provider() -> ProviderConfig:
    """
    Choose a provider from the API keys in the environment.

    Gemini is preferred, then Anthropic, then OpenAI. Without any key the
    noop provider is used and every AI feature falls back to its default.
    """
    for name, model, env_vars in _PROVIDER_KEYS:
        if any(os.environ.get(var) for var in env_vars):
            return ProviderConfig(name, {"model": model})
    return ProviderConfig("noop")


def create_default_config(store_path: Path) -> StoreConfig:
    return StoreConfig(path=store_path, inference=detect_default_provider())


def _parse_gateway(section: dict[str, Any], source: str) -> GatewayConfig:
    try:
        gateway = GatewayConfig(
            timeout=float(section.get("timeout", DEFAULT_TIMEOUT)),
            tag_context_limit=int(section.get("tag_context_limit", DEFAULT_TAG_CONTEXT_LIMIT)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"{source}: invalid [gateway] section: {e}") from e
    gateway.validate(source)
    return gateway


def load_config(store_path: Path) -> StoreConfig:
    """
    Read ``mindclone.toml`` from a store directory.

    Raises:
        FileNotFoundError: No config file in the directory
        ValueError: Written by a newer mindclone, or a [gateway] value is invalid
    """
    config_path = store_path / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store_section = data.get("store", {})
    version = store_section.get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValueError(
            f"{config_path} was written by a newer mindclone "
            f"(config version {version}, this version supports {CONFIG_VERSION})"
        )

    inference_section = dict(data.get("inference", {}))
    name = inference_section.pop("name", "noop")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store_section.get("created", ""),
        inference=ProviderConfig(name, inference_section),
        gateway=_parse_gateway(data.get("gateway", {}), str(config_path)),
    )


def apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """
    Apply per-run overrides from the environment.

    MINDCLONE_PROVIDER replaces the provider (dropping its file parameters),
    MINDCLONE_MODEL sets the model, MINDCLONE_TIMEOUT the gateway timeout.
    """
    provider = os.environ.get("MINDCLONE_PROVIDER")
    if provider and provider != config.inference.name:
        config.inference = ProviderConfig(provider)
    model = os.environ.get("MINDCLONE_MODEL")
    if model:
        config.inference.params["model"] = model
    timeout = os.environ.get("MINDCLONE_TIMEOUT")
    if timeout:
        try:
            config.gateway.timeout = float(timeout)
        except ValueError:
            raise ValueError(f"MINDCLONE_TIMEOUT must be a number, got {timeout!r}") from None
        config.gateway.validate("MINDCLONE_TIMEOUT")
    return config


def save_config(config: StoreConfig) -> None:
    """Write ``mindclone.toml``, creating the store directory if needed."""
    config.path.mkdir(parents=True, exist_ok=True)
    data = {
        "store": {"version": config.version, "created": config.created},
        "inference": {"name": config.inference.name, **config.inference.params},
        "gateway": {
            "timeout": config.gateway.timeout,
            "tag_context_limit": config.gateway.tag_context_limit,
        },
    }
    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load a store's config, writing the detected defaults on first use.

    Environment overrides are applied to the result but never saved.
    """
    if (store_path / CONFIG_FILENAME).exists():
        config = load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
    return apply_env_overrides(config)

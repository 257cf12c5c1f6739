"""
Configuration management for rtb corpora.

The configuration is stored as a TOML file (by default ``rtb.toml`` next
to the database). It specifies which providers to use, their parameters,
and the batching/search settings. It is loaded once and passed explicitly
to ThirdBrain; components never read it from ambient state.
"""

import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .errors import ConfigurationError


CONFIG_FILENAME = "rtb.toml"
CONFIG_VERSION = 1

SUPPORTED_METRICS = ("cosine", "dot", "euclidean")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmbeddingIdentity:
    """The (provider, model, dimension) triple that produced a corpus' vectors."""
    provider: str
    model: str
    dimension: int

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}/{self.dimension}"


@dataclass
class ImportSettings:
    # Pages committed per transaction
    pages_per_batch: int = 1


@dataclass
class EmbeddingSettings:
    batch_size: int = 512
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0


@dataclass
class SearchSettings:
    metric: str = "cosine"
    top_k: int = 32


@dataclass
class AnswerSettings:
    top_k: int = 64
    max_tokens: int = 1024


@dataclass
class StoreConfig:
    """Complete rtb configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Provider configurations
    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("openai"))
    completion: ProviderConfig = field(default_factory=lambda: ProviderConfig("openai"))

    imports: ImportSettings = field(default_factory=ImportSettings)
    embeddings: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    answer: AnswerSettings = field(default_factory=AnswerSettings)

    def validate(self) -> None:
        """Reject settings that would break an operation half-way through."""
        if self.imports.pages_per_batch < 1:
            raise ConfigurationError("import.pages_per_batch must be at least 1")
        if self.embeddings.batch_size < 1:
            raise ConfigurationError("embeddings.batch_size must be at least 1")
        if self.embeddings.max_attempts < 1:
            raise ConfigurationError("embeddings.max_attempts must be at least 1")
        if self.search.metric not in SUPPORTED_METRICS:
            raise ConfigurationError(
                f"Unknown search.metric {self.search.metric!r}. "
                f"Supported: {', '.join(SUPPORTED_METRICS)}"
            )


def default_config_path(db_path: Path) -> Path:
    """Config file that sits beside a database file."""
    return db_path.parent / CONFIG_FILENAME


def load_config(config_path: Path) -> StoreConfig:
    """
    Load configuration from a TOML file.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigurationError: If config is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid config {config_path}: {e}") from e

    # Validate version
    version = data.get("rtb", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigurationError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION})"
        )

    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    def parse_settings(cls, section: dict):
        known = cls.__dataclass_fields__
        unknown = set(section) - set(known)
        if unknown:
            raise ConfigurationError(
                f"Unknown keys in config section: {', '.join(sorted(unknown))}"
            )
        return cls(**section)

    config = StoreConfig(
        path=config_path,
        version=version,
        created=data.get("rtb", {}).get("created", ""),
        embedding=parse_provider(data.get("embedding", {"name": "openai"})),
        completion=parse_provider(data.get("completion", {"name": "openai"})),
        imports=parse_settings(ImportSettings, data.get("import", {})),
        embeddings=parse_settings(EmbeddingSettings, data.get("embeddings", {})),
        search=parse_settings(SearchSettings, data.get("search", {})),
        answer=parse_settings(AnswerSettings, data.get("answer", {})),
    )
    config.validate()
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to its TOML file.

    Creates the parent directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.parent.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data = {
        "rtb": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": provider_to_dict(config.embedding),
        "completion": provider_to_dict(config.completion),
        "import": vars(config.imports),
        "embeddings": vars(config.embeddings),
        "search": vars(config.search),
        "answer": vars(config.answer),
    }

    with open(config.path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(config_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if config_path.exists():
        return load_config(config_path)
    config = StoreConfig(path=config_path)
    save_config(config)
    return config


def with_provider_params(provider: ProviderConfig, **overrides: Optional[Any]) -> ProviderConfig:
    """Copy of a ProviderConfig with non-None overrides merged into its params."""
    params = dict(provider.params)
    params.update({k: v for k, v in overrides.items() if v is not None})
    return ProviderConfig(provider.name, params)

"""
Configuration Management for ctxsynth

Loads configuration from ~/.ctxsynth/config.json, a local .env file, and
environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger("ctxsynth.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".ctxsynth"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"
ALIAS_TABLE_PATH = CONFIG_DIR / "workspace-context.json"


@dataclass
class StorageConfig:
    """Hot and durable tier locations"""
    hot_db_path: str = str(DATA_DIR / "active_context.db")
    durable_db_path: str = str(DATA_DIR / "archive.db")
    hot_ttl_hours: float = 36.0


@dataclass
class AliasConfig:
    """Project alias table location"""
    path: str = str(ALIAS_TABLE_PATH)


@dataclass
class VectorConfig:
    """Vector-similarity search service"""
    endpoint: str = ""
    api_key: str = ""
    threshold: float = 0.3
    timeout: float = 30.0
    max_retries: int = 3


@dataclass
class RerankConfig:
    """Cross-encoder reranking service (optional)"""
    api_key: str = ""
    model: str = "rerank-english-v3.0"
    base_url: str = "https://api.cohere.com"
    timeout: float = 30.0


@dataclass
class BudgetConfig:
    """Search budget thresholds (empirically tuned, keep configurable)"""
    token_cap: int = 15000
    strike_count: int = 3
    high_threshold: float = 0.5
    medium_threshold: float = 0.3


@dataclass
class BootConfig:
    """Context restoration defaults"""
    lookback_days: int = 7
    max_results: int = 10
    context_truncate: int = 400
    stream_truncate: int = 1200
    recent_limit: int = 20
    aux_cache_ttl_seconds: float = 30.0
    active_context_score: float = 0.9


@dataclass
class CtxSynthConfig:
    """Main ctxsynth configuration"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    aliases: AliasConfig = field(default_factory=AliasConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    boot: BootConfig = field(default_factory=BootConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = data.get("storage", {})
    defaults = StorageConfig()
    return StorageConfig(
        hot_db_path=storage_data.get("hot_db_path", defaults.hot_db_path),
        durable_db_path=storage_data.get("durable_db_path", defaults.durable_db_path),
        hot_ttl_hours=storage_data.get("hot_ttl_hours", 36.0),
    )


def _parse_alias_config(data: dict) -> AliasConfig:
    """Parse aliases section from config dict"""
    alias_data = data.get("aliases", {})
    return AliasConfig(path=alias_data.get("path", str(ALIAS_TABLE_PATH)))


def _parse_vector_config(data: dict) -> VectorConfig:
    """Parse vector section from config dict"""
    vector_data = data.get("vector", {})
    return VectorConfig(
        endpoint=vector_data.get("endpoint", ""),
        api_key=vector_data.get("api_key", ""),
        threshold=vector_data.get("threshold", 0.3),
        timeout=vector_data.get("timeout", 30.0),
        max_retries=vector_data.get("max_retries", 3),
    )


def _parse_rerank_config(data: dict) -> RerankConfig:
    """Parse rerank section from config dict"""
    rerank_data = data.get("rerank", {})
    return RerankConfig(
        api_key=rerank_data.get("api_key", ""),
        model=rerank_data.get("model", "rerank-english-v3.0"),
        base_url=rerank_data.get("base_url", "https://api.cohere.com"),
        timeout=rerank_data.get("timeout", 30.0),
    )


def _parse_budget_config(data: dict) -> BudgetConfig:
    """Parse budget section from config dict"""
    budget_data = data.get("budget", {})
    return BudgetConfig(
        token_cap=budget_data.get("token_cap", 15000),
        strike_count=budget_data.get("strike_count", 3),
        high_threshold=budget_data.get("high_threshold", 0.5),
        medium_threshold=budget_data.get("medium_threshold", 0.3),
    )


def _parse_boot_config(data: dict) -> BootConfig:
    """Parse boot section from config dict"""
    boot_data = data.get("boot", {})
    return BootConfig(
        lookback_days=boot_data.get("lookback_days", 7),
        max_results=boot_data.get("max_results", 10),
        context_truncate=boot_data.get("context_truncate", 400),
        stream_truncate=boot_data.get("stream_truncate", 1200),
        recent_limit=boot_data.get("recent_limit", 20),
        aux_cache_ttl_seconds=boot_data.get("aux_cache_ttl_seconds", 30.0),
        active_context_score=boot_data.get("active_context_score", 0.9),
    )


def load_config() -> CtxSynthConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (including a local .env file)
    2. Config file (~/.ctxsynth/config.json)
    3. Default values
    """
    load_dotenv()
    config = CtxSynthConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.storage = _parse_storage_config(data)
            config.aliases = _parse_alias_config(data)
            config.vector = _parse_vector_config(data)
            config.rerank = _parse_rerank_config(data)
            config.budget = _parse_budget_config(data)
            config.boot = _parse_boot_config(data)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    # Environment variable overrides
    if os.getenv("CTXSYNTH_HOT_DB"):
        config.storage.hot_db_path = os.getenv("CTXSYNTH_HOT_DB")
    if os.getenv("CTXSYNTH_DURABLE_DB"):
        config.storage.durable_db_path = os.getenv("CTXSYNTH_DURABLE_DB")
    if os.getenv("CTXSYNTH_HOT_TTL_HOURS"):
        config.storage.hot_ttl_hours = float(os.getenv("CTXSYNTH_HOT_TTL_HOURS"))
    if os.getenv("CTXSYNTH_ALIAS_TABLE"):
        config.aliases.path = os.getenv("CTXSYNTH_ALIAS_TABLE")

    if os.getenv("VECTOR_SEARCH_ENDPOINT"):
        config.vector.endpoint = os.getenv("VECTOR_SEARCH_ENDPOINT")
    if os.getenv("CTXSYNTH_LOOKBACK_DAYS"):
        config.boot.lookback_days = int(os.getenv("CTXSYNTH_LOOKBACK_DAYS"))
    if os.getenv("CTXSYNTH_TOKEN_CAP"):
        config.budget.token_cap = int(os.getenv("CTXSYNTH_TOKEN_CAP"))

    # Secrets: track env-sourced keys so save_config never persists them
    _env_secret_map = {
        "VECTOR_SEARCH_API_KEY": (config.vector, "api_key", "vector.api_key"),
        "COHERE_API_KEY": (config.rerank, "api_key", "rerank.api_key"),
    }
    for env_var, (section, attr, key) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(key)

    return config


def save_config(config: CtxSynthConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    data = {
        "storage": {
            "hot_db_path": config.storage.hot_db_path,
            "durable_db_path": config.storage.durable_db_path,
            "hot_ttl_hours": config.storage.hot_ttl_hours,
        },
        "aliases": {
            "path": config.aliases.path,
        },
        "vector": {
            "endpoint": config.vector.endpoint,
            "api_key": "" if "vector.api_key" in env_sourced else config.vector.api_key,
            "threshold": config.vector.threshold,
            "timeout": config.vector.timeout,
            "max_retries": config.vector.max_retries,
        },
        "rerank": {
            "api_key": "" if "rerank.api_key" in env_sourced else config.rerank.api_key,
            "model": config.rerank.model,
            "base_url": config.rerank.base_url,
            "timeout": config.rerank.timeout,
        },
        "budget": {
            "token_cap": config.budget.token_cap,
            "strike_count": config.budget.strike_count,
            "high_threshold": config.budget.high_threshold,
            "medium_threshold": config.budget.medium_threshold,
        },
        "boot": {
            "lookback_days": config.boot.lookback_days,
            "max_results": config.boot.max_results,
            "context_truncate": config.boot.context_truncate,
            "stream_truncate": config.boot.stream_truncate,
            "recent_limit": config.boot.recent_limit,
            "aux_cache_ttl_seconds": config.boot.aux_cache_ttl_seconds,
            "active_context_score": config.boot.active_context_score,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)

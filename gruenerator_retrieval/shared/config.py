# Configuration loader with environment variable support
# Tunables for hybrid fusion, quality scoring, context expansion and intent detection

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import FrozenModel

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent


class SearchDefaults(FrozenModel):
    default_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    default_limit: int = Field(default=10, gt=0)
    max_limit: int = Field(default=100, gt=0)
    recall_multiplier: int = Field(default=4, gt=0)  # text recall = limit * multiplier
    vector_recall_factor: float = Field(default=1.5, gt=0.0)
    prefer_rrf: bool = True


class HybridConfig(FrozenModel):
    """Fusion and gating tunables. Frozen: derive per-call variants with model_copy."""

    rrf_k: int = Field(default=60, gt=0)
    min_vector_only_threshold: float = Field(default=0.55, ge=0.0, le=1.0)
    min_vector_with_text_threshold: float = Field(default=0.35, ge=0.0, le=1.0)
    min_final_score: float = Field(default=0.008, ge=0.0)
    min_vector_only_final_score: float = Field(default=0.010, ge=0.0)
    confidence_boost: float = Field(default=1.2, ge=1.0)
    confidence_penalty: float = Field(default=0.7, gt=0.0, le=1.0)
    enable_dynamic_thresholds: bool = True
    enable_confidence_weighting: bool = True
    enable_quality_gate: bool = True
    # Weights used when RRF is abandoned for lack of lexical signal
    fallback_vector_weight: float = Field(default=0.85, ge=0.0)
    fallback_text_weight: float = Field(default=0.15, ge=0.0)
    # Weights used for weighted fusion when real text matches exist
    balanced_vector_weight: float = Field(default=0.5, ge=0.0)
    balanced_text_weight: float = Field(default=0.5, ge=0.0)
    min_text_results_for_rrf: int = Field(default=3, ge=0)


class QualityWeights(FrozenModel):
    readability: float = Field(default=0.30, ge=0.0)
    completeness: float = Field(default=0.25, ge=0.0)
    structure: float = Field(default=0.25, ge=0.0)
    density: float = Field(default=0.20, ge=0.0)

    @property
    def total(self) -> float:
        return self.readability + self.completeness + self.structure + self.density


class QualityRetrievalConfig(FrozenModel):
    enable_quality_filter: bool = True
    min_retrieval_quality: float = Field(default=0.4, ge=0.0, le=1.0)
    quality_boost_factor: float = Field(default=1.2, gt=0.0)


class QualityConfig(FrozenModel):
    enabled: bool = True
    min_chunk_quality: float = Field(default=0.3, ge=0.0, le=1.0)
    weights: QualityWeights = Field(default_factory=QualityWeights)
    retrieval: QualityRetrievalConfig = Field(default_factory=QualityRetrievalConfig)


class ContextConfig(FrozenModel):
    enabled: bool = True
    window: int = Field(default=1, ge=0)
    max_chunks: int = Field(default=10, gt=0)
    top_n: int = Field(default=5, ge=0)  # how many top results get expanded


class IntentConfig(FrozenModel):
    enabled: bool = True
    german_patterns: bool = True
    # Store-side `should` requires at least one match, so hints stay off by default
    apply_store_hints: bool = False


class RetrievalConfig(FrozenModel):
    """Main configuration model"""

    search: SearchDefaults = Field(default_factory=SearchDefaults)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    intent: IntentConfig = Field(default_factory=IntentConfig)

    def with_overrides(
        self, overrides: Optional[Mapping[str, Any]]
    ) -> "RetrievalConfig":
        """Return a validated copy with ``overrides`` deep-merged in.

        The receiver is never modified, so shared defaults stay intact
        across concurrent requests.
        """
        if not overrides:
            return self
        merged = _deep_merge(self.model_dump(), overrides)
        return RetrievalConfig.model_validate(merged)


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``overrides`` into a copy of ``base``; nested mappings are copied, never shared."""
    out = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping):
            current = out.get(key)
            out[key] = _deep_merge(current if isinstance(current, dict) else {}, value)
        else:
            out[key] = value
    return out


class Settings(BaseSettings):
    """Environment-based settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Qdrant
    qdrant_url: str = Field(default="http://localhost:6333", alias="QDRANT_URL")
    qdrant_api_key: Optional[str] = Field(default=None, alias="QDRANT_API_KEY")
    qdrant_timeout: int = Field(default=30, alias="QDRANT_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    # Route log lines to stderr for hosts that own stdout
    log_stderr: bool = Field(default=False, alias="RETRIEVAL_LOG_STDERR")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return (value or "INFO").upper()


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in {"false", "0", "no", "off"}


# (env var, config path, parser); legacy deployment variable names
ENV_OVERRIDES: List[Tuple[str, Tuple[str, ...], Callable[[str], Any]]] = [
    ("VECTOR_SEARCH_THRESHOLD", ("search", "default_threshold"), float),
    ("VECTOR_DEFAULT_LIMIT", ("search", "default_limit"), int),
    ("VECTOR_MAX_LIMIT", ("search", "max_limit"), int),
    ("HYBRID_MIN_VECTOR_ONLY_THRESHOLD", ("hybrid", "min_vector_only_threshold"), float),
    (
        "HYBRID_MIN_VECTOR_WITH_TEXT_THRESHOLD",
        ("hybrid", "min_vector_with_text_threshold"),
        float,
    ),
    ("HYBRID_MIN_FINAL_SCORE", ("hybrid", "min_final_score"), float),
    (
        "HYBRID_MIN_VECTOR_ONLY_FINAL_SCORE",
        ("hybrid", "min_vector_only_final_score"),
        float,
    ),
    ("HYBRID_CONFIDENCE_BOOST", ("hybrid", "confidence_boost"), float),
    ("HYBRID_CONFIDENCE_PENALTY", ("hybrid", "confidence_penalty"), float),
    ("HYBRID_ENABLE_DYNAMIC_THRESHOLDS", ("hybrid", "enable_dynamic_thresholds"), _parse_bool),
    (
        "HYBRID_ENABLE_CONFIDENCE_WEIGHTING",
        ("hybrid", "enable_confidence_weighting"),
        _parse_bool,
    ),
    ("HYBRID_ENABLE_QUALITY_GATE", ("hybrid", "enable_quality_gate"), _parse_bool),
    ("QUALITY_SCORING_ENABLED", ("quality", "enabled"), _parse_bool),
    ("QUALITY_MIN_CHUNK", ("quality", "min_chunk_quality"), float),
    ("QUALITY_FILTER_ENABLED", ("quality", "retrieval", "enable_quality_filter"), _parse_bool),
    ("QUALITY_MIN_RETRIEVAL", ("quality", "retrieval", "min_retrieval_quality"), float),
    ("QUALITY_BOOST_FACTOR", ("quality", "retrieval", "quality_boost_factor"), float),
    ("QUERY_INTENT_ENABLED", ("intent", "enabled"), _parse_bool),
    ("USE_GERMAN_PATTERNS", ("intent", "german_patterns"), _parse_bool),
]


def _env_override(
    env_name: str,
    current_value: Any,
    env_parser: Callable[[str], Any] = lambda v: v,
) -> Any:
    raw_value = os.getenv(env_name)
    if raw_value is None or raw_value.strip() == "":
        return current_value
    try:
        parsed_value = env_parser(raw_value)
    except ValueError:
        logger.warning(
            "Failed to parse env override %s=%s; keeping value %s",
            env_name,
            raw_value,
            current_value,
        )
        return current_value
    logger.debug("Env %s overriding %s -> %s", env_name, current_value, parsed_value)
    return parsed_value


def apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Layer the legacy environment variables over a raw config mapping."""
    out = _deep_merge({}, config_dict)
    for env_name, path, parser in ENV_OVERRIDES:
        section = out
        for key in path[:-1]:
            section = section.setdefault(key, {})
        section[path[-1]] = _env_override(env_name, section.get(path[-1]), parser)
        if section[path[-1]] is None:
            del section[path[-1]]
    return out


def _resolve_config_path(settings: Settings) -> Tuple[Path, bool]:
    if settings.config_path:
        return Path(settings.config_path), True
    return PROJECT_ROOT / "config" / f"{settings.env}.yaml", False


def load_config() -> Tuple[RetrievalConfig, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (RetrievalConfig, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If an explicit CONFIG_PATH does not exist
        ValueError: If configuration validation fails
    """
    settings = Settings()
    config_path, explicit = _resolve_config_path(settings)

    config_dict: Dict[str, Any] = {}
    if config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        logger.warning(
            "Configuration file %s not found; using built-in defaults", config_path
        )

    config = RetrievalConfig.model_validate(apply_env_overrides(config_dict))
    validate_config_at_startup(config)
    return config, settings


def validate_config_at_startup(config: RetrievalConfig) -> None:
    """
    Check cross-field consistency that field constraints cannot express.

    Hard range violations are already rejected by the models; this only
    warns about combinations that are legal but probably unintended.
    """
    hybrid = config.hybrid
    if hybrid.min_vector_only_threshold < hybrid.min_vector_with_text_threshold:
        logger.warning(
            "min_vector_only_threshold (%s) should be >= min_vector_with_text_threshold (%s)",
            hybrid.min_vector_only_threshold,
            hybrid.min_vector_with_text_threshold,
        )

    if config.quality.enabled:
        weight_sum = config.quality.weights.total
        if abs(weight_sum - 1.0) > 0.01:
            logger.warning(f"Quality weights sum to {weight_sum}, should be 1.0")

    if config.search.default_limit > config.search.max_limit:
        raise ValueError(
            f"search.default_limit ({config.search.default_limit}) exceeds "
            f"search.max_limit ({config.search.max_limit})"
        )

    logger.info("Configuration validation successful")


# Global config instances (loaded once at startup)
_config: Optional[RetrievalConfig] = None
_settings: Optional[Settings] = None


def get_config() -> RetrievalConfig:
    """Get the global RetrievalConfig instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _, _settings = load_config()
    return _settings


def init_config() -> Tuple[RetrievalConfig, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> Tuple[RetrievalConfig, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings

import os
from decimal import Decimal, InvalidOperation

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

from cascade_categorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "CATEGORIZER_LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "CATEGORIES",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OPENAI_MODEL_CHEAP",
    "OPENAI_MODEL_STANDARD",
    "OPENAI_MODEL_PREMIUM",
    "REMOTE_TIMEOUT_SECONDS",
    "REMOTE_MAX_CONCURRENCY",
    "DAILY_BUDGET",
    "MONTHLY_BUDGET",
    "CACHE_THRESHOLD",
    "SIMILARITY_THRESHOLD",
    "STATISTICAL_THRESHOLD",
    "SIMILARITY_K",
    "SIMILARITY_MIN_NEIGHBORS",
    "CACHE_CAPACITY",
    "COMPLEXITY_REMOTE_CUTOFF",
    "HIGH_VALUE_AMOUNT",
)


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] and raw_value[0] in {'"', "'"}:
        return raw_value[1:-1]
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read a flat ``KEY: value`` file. Nested YAML is not supported."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            cleaned = raw_value.split(" #", 1)[0].strip()
            if key and cleaned:
                values[key] = _unquote_value(cleaned)
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


def get_env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


_SENSITIVE_ENV_KEYS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    sensitive = any(marker in name.upper() for marker in _SENSITIVE_ENV_KEYS)
    if not sensitive and not sanitized.startswith("sk-"):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    logger.info("[ENV] Config file: %s", _CONFIG_FILE_PATH or "<none>")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


class EngineConfig(BaseModel):
    """Tunable thresholds and limits of the categorization cascade."""

    cache_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    cache_write_min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    cache_capacity: int = Field(default=2048, ge=1)
    cache_description_prefix: int = Field(default=32, ge=1)

    similarity_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    similarity_k: int = Field(default=5, ge=1)
    similarity_min_neighbors: int = Field(default=3, ge=1)
    similarity_min_score: float = Field(default=0.5, ge=-1.0, le=1.0)
    similarity_ambiguity_cutoff: float = Field(default=0.8, ge=0.0, le=1.0)

    statistical_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    statistical_min_classes: int = Field(default=2, ge=1)

    remote_timeout_seconds: float = Field(default=8.0, gt=0)
    remote_max_concurrency: int = Field(default=4, ge=1)
    remote_complexity_cutoff: float = Field(default=0.7, ge=0.0, le=1.0)
    remote_cost_weight: float = Field(default=10.0, ge=0.0)
    remote_value_rate: float = Field(default=0.001, ge=0.0)
    high_value_amount: Decimal = Decimal("500")
    remote_breaker_failures: int = Field(default=5, ge=1)
    remote_breaker_seconds: float = Field(default=30.0, gt=0)
    model_cheap: str = "gpt-4.1-nano"
    model_standard: str = "gpt-4.1-mini"
    model_premium: str = "gpt-4.1"

    daily_budget: Decimal = Decimal("5.00")
    monthly_budget: Decimal = Decimal("100.00")
    budget_warning_ratio: float = Field(default=0.8, gt=0.0, le=1.0)

    rule_min_corrections: int = Field(default=3, ge=1)
    rule_window_days: int = Field(default=30, ge=1)
    rule_ttl_days: int = Field(default=30, ge=1)
    history_window_days: int = Field(default=30, ge=1)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        defaults = cls()
        return cls(
            cache_threshold=get_env_float("CACHE_THRESHOLD", defaults.cache_threshold),
            cache_capacity=get_env_int("CACHE_CAPACITY", defaults.cache_capacity, min_value=1),
            similarity_threshold=get_env_float("SIMILARITY_THRESHOLD", defaults.similarity_threshold),
            similarity_k=get_env_int("SIMILARITY_K", defaults.similarity_k, min_value=1),
            similarity_min_neighbors=get_env_int(
                "SIMILARITY_MIN_NEIGHBORS",
                defaults.similarity_min_neighbors,
                min_value=1,
            ),
            statistical_threshold=get_env_float("STATISTICAL_THRESHOLD", defaults.statistical_threshold),
            remote_timeout_seconds=get_env_float("REMOTE_TIMEOUT_SECONDS", defaults.remote_timeout_seconds),
            remote_max_concurrency=get_env_int(
                "REMOTE_MAX_CONCURRENCY",
                defaults.remote_max_concurrency,
                min_value=1,
            ),
            remote_complexity_cutoff=get_env_float(
                "COMPLEXITY_REMOTE_CUTOFF",
                defaults.remote_complexity_cutoff,
            ),
            high_value_amount=get_env_decimal("HIGH_VALUE_AMOUNT", defaults.high_value_amount),
            model_cheap=os.getenv("OPENAI_MODEL_CHEAP") or defaults.model_cheap,
            model_standard=os.getenv("OPENAI_MODEL_STANDARD") or defaults.model_standard,
            model_premium=os.getenv("OPENAI_MODEL_PREMIUM") or defaults.model_premium,
            daily_budget=get_env_decimal("DAILY_BUDGET", defaults.daily_budget),
            monthly_budget=get_env_decimal("MONTHLY_BUDGET", defaults.monthly_budget),
        )


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")

ensure_dir(DATA_DIR)
ensure_dir(LOG_DIR)

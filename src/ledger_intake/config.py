"""
Configuration management (SSOT).

This module defines ALL configuration for the import pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Provider credentials are read from the file or the environment, never logged
- A provider without credentials is simply "not configured", not an error
- AI preferences are validated against their enums at load time
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class AIMode(str, Enum):
    """Which extractors the user allows."""

    AUTO = "auto"
    LOCAL_ONLY = "local_only"
    CLOUD_ONLY = "cloud_only"


class AIStrategy(str, Enum):
    """What the user optimizes for when both extractors are allowed."""

    SPEED = "speed"
    ACCURACY = "accuracy"
    PRIVACY = "privacy"


@dataclass
class AIPreferences:
    """User preferences driving the extraction strategy selector."""

    mode: AIMode = AIMode.AUTO
    strategy: AIStrategy = AIStrategy.SPEED
    privacy_mode: bool = False
    # Local results at or above this confidence skip the cloud fallback
    confidence_threshold: float = 0.7


@dataclass
class GeminiConfig:
    api_key: str | None = None
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"


@dataclass
class OpenAIConfig:
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"


@dataclass
class OllamaConfig:
    """Ollama server configuration (localhost, LAN or remote)."""

    enabled: bool = False
    url: str = "http://localhost:11434"
    model: str = "llava:7b"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None


@dataclass
class ProvidersConfig:
    """Cloud provider credentials and the ordered fallback table."""

    order: list[str] = field(default_factory=lambda: ["gemini", "openai", "ollama"])
    # Feature name -> preferred provider name
    preferred: dict[str, str] = field(default_factory=dict)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)


@dataclass
class OCRConfig:
    enabled: bool = True
    engine: str = "tesseract"
    languages: str = "eng"


@dataclass
class TimeoutConfig:
    """Per-call extraction budgets (seconds)."""

    single_seconds: float = 60.0
    multi_seconds: float = 90.0
    http_connect_seconds: float = 10.0


@dataclass
class QueueConfig:
    max_retry_count: int = 3
    log_retention_days: int = 7


@dataclass
class ConnectivityConfig:
    """How the pipeline decides whether it is online."""

    assume_online: bool = True
    probe_url: str | None = None
    probe_timeout_seconds: float = 5.0


@dataclass
class ImportDefaultsConfig:
    default_currency: str = "USD"
    default_category: str = "other_expense"
    low_confidence_threshold: float = 0.5


@dataclass
class CategoryDefinition:
    id: str
    name: str
    type: str = "expense"


DEFAULT_CATEGORIES: list[tuple[str, str, str]] = [
    ("food", "Food & Dining", "expense"),
    ("transport", "Transportation", "expense"),
    ("shopping", "Shopping", "expense"),
    ("entertainment", "Entertainment", "expense"),
    ("bills", "Bills & Utilities", "expense"),
    ("health", "Health & Medical", "expense"),
    ("personal", "Personal Care", "expense"),
    ("education", "Education", "expense"),
    ("travel", "Travel", "expense"),
    ("family", "Family", "expense"),
    ("pets", "Pets", "expense"),
    ("financial", "Financial", "expense"),
    ("gifts", "Gifts & Donations", "expense"),
    ("subscriptions", "Subscriptions", "expense"),
    ("other_expense", "Other Expense", "expense"),
    ("employment", "Employment", "income"),
    ("self_employment", "Self-Employment", "income"),
    ("investments", "Investments", "income"),
    ("rental", "Rental Income", "income"),
    ("government", "Government", "income"),
    ("other_income", "Other Income", "income"),
]


def _default_categories() -> list[CategoryDefinition]:
    return [CategoryDefinition(id=i, name=n, type=t) for i, n, t in DEFAULT_CATEGORIES]


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    ai: AIPreferences = field(default_factory=AIPreferences)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    import_defaults: ImportDefaultsConfig = field(default_factory=ImportDefaultsConfig)
    categories: list[CategoryDefinition] = field(default_factory=_default_categories)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Authenticated ledger owner; commits are refused without it
    user_id: str | None = None

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not 0.0 <= self.ai.confidence_threshold <= 1.0:
            errors.append("ai.confidence_threshold must be between 0 and 1")

        known = {"gemini", "openai", "ollama"}
        for name in self.providers.order:
            if name not in known:
                errors.append(f"providers.order contains unknown provider '{name}'")
        for feature, name in self.providers.preferred.items():
            if name not in known:
                errors.append(f"providers.preferred.{feature} names unknown provider '{name}'")

        if self.providers.ollama.enabled and not self.providers.ollama.url:
            errors.append("providers.ollama.url is required when Ollama is enabled")

        if self.timeouts.single_seconds <= 0 or self.timeouts.multi_seconds <= 0:
            errors.append("timeouts must be positive")

        if self.queue.max_retry_count < 1:
            errors.append("queue.max_retry_count must be at least 1")

        category_ids = {c.id for c in self.categories}
        if self.import_defaults.default_category not in category_ids:
            errors.append(
                f"import_defaults.default_category '{self.import_defaults.default_category}' "
                "is not a configured category"
            )

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    return default


def _parse_enum(enum_cls: type[Enum], value: str, key: str) -> Enum:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigValidationError(f"{key} must be one of: {allowed} (got '{value}')") from None


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - LEDGER_INTAKE_AI_MODE, LEDGER_INTAKE_AI_STRATEGY
    - LEDGER_INTAKE_PRIVACY_MODE (true/false)
    - GEMINI_API_KEY, OPENAI_API_KEY
    - OLLAMA_URL, OLLAMA_MODEL, OLLAMA_AUTH_HEADER
    - LEDGER_INTAKE_OLLAMA_ENABLED (true/false)
    - LEDGER_INTAKE_STATE_DB
    - LEDGER_INTAKE_USER_ID
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # AI preferences
    ai_data = data.get("ai", {})
    ai = AIPreferences(
        mode=_parse_enum(
            AIMode, os.environ.get("LEDGER_INTAKE_AI_MODE", ai_data.get("mode", "auto")), "ai.mode"
        ),
        strategy=_parse_enum(
            AIStrategy,
            os.environ.get("LEDGER_INTAKE_AI_STRATEGY", ai_data.get("strategy", "speed")),
            "ai.strategy",
        ),
        privacy_mode=_env_bool("LEDGER_INTAKE_PRIVACY_MODE", ai_data.get("privacy_mode", False)),
        confidence_threshold=float(ai_data.get("confidence_threshold", 0.7)),
    )

    # Providers
    providers_data = data.get("providers", {})
    gemini_data = providers_data.get("gemini", {})
    openai_data = providers_data.get("openai", {})
    ollama_data = providers_data.get("ollama", {})
    providers = ProvidersConfig(
        order=list(providers_data.get("order", ["gemini", "openai", "ollama"])),
        preferred=dict(providers_data.get("preferred", {})),
        gemini=GeminiConfig(
            api_key=os.environ.get("GEMINI_API_KEY", gemini_data.get("api_key")),
            model=gemini_data.get("model", "gemini-2.5-flash"),
            base_url=gemini_data.get(
                "base_url", "https://generativelanguage.googleapis.com/v1beta"
            ),
        ),
        openai=OpenAIConfig(
            api_key=os.environ.get("OPENAI_API_KEY", openai_data.get("api_key")),
            model=openai_data.get("model", "gpt-4o-mini"),
            base_url=openai_data.get("base_url", "https://api.openai.com/v1"),
        ),
        ollama=OllamaConfig(
            enabled=_env_bool("LEDGER_INTAKE_OLLAMA_ENABLED", ollama_data.get("enabled", False)),
            url=os.environ.get("OLLAMA_URL", ollama_data.get("url", "http://localhost:11434")),
            model=os.environ.get("OLLAMA_MODEL", ollama_data.get("model", "llava:7b")),
            auth_header=os.environ.get("OLLAMA_AUTH_HEADER", ollama_data.get("auth_header")),
        ),
    )

    ocr_data = data.get("ocr", {})
    ocr = OCRConfig(
        enabled=ocr_data.get("enabled", True),
        engine=ocr_data.get("engine", "tesseract"),
        languages=ocr_data.get("languages", "eng"),
    )

    timeout_data = data.get("timeouts", {})
    timeouts = TimeoutConfig(
        single_seconds=float(timeout_data.get("single_seconds", 60.0)),
        multi_seconds=float(timeout_data.get("multi_seconds", 90.0)),
        http_connect_seconds=float(timeout_data.get("http_connect_seconds", 10.0)),
    )

    queue_data = data.get("queue", {})
    queue = QueueConfig(
        max_retry_count=int(queue_data.get("max_retry_count", 3)),
        log_retention_days=int(queue_data.get("log_retention_days", 7)),
    )

    conn_data = data.get("connectivity", {})
    connectivity = ConnectivityConfig(
        assume_online=conn_data.get("assume_online", True),
        probe_url=conn_data.get("probe_url"),
        probe_timeout_seconds=float(conn_data.get("probe_timeout_seconds", 5.0)),
    )

    defaults_data = data.get("import_defaults", {})
    import_defaults = ImportDefaultsConfig(
        default_currency=defaults_data.get("default_currency", "USD"),
        default_category=defaults_data.get("default_category", "other_expense"),
        low_confidence_threshold=float(defaults_data.get("low_confidence_threshold", 0.5)),
    )

    categories_data = data.get("categories")
    if categories_data:
        categories = [
            CategoryDefinition(id=c["id"], name=c.get("name", c["id"]), type=c.get("type", "expense"))
            for c in categories_data
        ]
    else:
        categories = _default_categories()

    # State DB
    state_db = os.environ.get("LEDGER_INTAKE_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        ai=ai,
        providers=providers,
        ocr=ocr,
        timeouts=timeouts,
        queue=queue,
        connectivity=connectivity,
        import_defaults=import_defaults,
        categories=categories,
        state_db_path=Path(state_db),
        user_id=os.environ.get("LEDGER_INTAKE_USER_ID", data.get("user_id")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Ledger intake configuration
#
# Provider credentials may also come from the environment:
# GEMINI_API_KEY, OPENAI_API_KEY, OLLAMA_URL

# Extraction strategy preferences
ai:
  mode: auto                 # auto | local_only | cloud_only
  strategy: speed            # speed | accuracy | privacy
  privacy_mode: false        # true forces on-device extraction
  confidence_threshold: 0.7  # local results below this fall back to the cloud

# Cloud providers, tried in this order
providers:
  order: [gemini, openai, ollama]
  preferred: {}              # e.g. {receipt_scanning: openai, categorization: gemini}
  gemini:
    api_key: null
    model: "gemini-2.5-flash"
  openai:
    api_key: null
    model: "gpt-4o-mini"
  ollama:
    enabled: false
    url: "http://localhost:11434"
    model: "llava:7b"
    auth_header: null

# On-device OCR
ocr:
  enabled: true
  engine: tesseract
  languages: eng

# Extraction budgets (seconds)
timeouts:
  single_seconds: 60
  multi_seconds: 90

# Offline queue
queue:
  max_retry_count: 3
  log_retention_days: 7

connectivity:
  assume_online: true
  probe_url: null            # e.g. https://www.google.com/generate_204

import_defaults:
  default_currency: USD
  default_category: other_expense
  low_confidence_threshold: 0.5

# State database path
state_db_path: "data/state.db"

# Ledger owner used when committing imports
user_id: null
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)

"""
Configuration management and loading.

Builds the explicit settings object handed to the relay at construction;
nothing downstream reads global settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class ProviderDescriptor:
    """Read-only description of an upstream provider."""
    id: str
    display_name: str
    requires_auth: bool
    auth_header: str
    credential_pool: str = ""

    def __post_init__(self):
        """Validate descriptor values and default the credential pool."""
        if not self.id:
            raise ValueError("provider id is required")
        if not self.auth_header:
            raise ValueError(f"auth_header is required for provider '{self.id}'")
        if not self.credential_pool:
            object.__setattr__(self, "credential_pool", self.id)


@dataclass(frozen=True)
class OrchestrationConfig:
    """Retry and rotation limits."""
    max_attempts: int = 10
    transient_retries: int = 1
    transient_backoff_seconds: float = 0.5
    exhaustion_reset_hours: Optional[float] = None

    def __post_init__(self):
        """Validate orchestration limits."""
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.transient_retries < 0:
            raise ValueError("transient_retries must be >= 0")
        if self.transient_backoff_seconds < 0:
            raise ValueError("transient_backoff_seconds must be >= 0")
        if self.exhaustion_reset_hours is not None and self.exhaustion_reset_hours <= 0:
            raise ValueError("exhaustion_reset_hours must be > 0 when set")

    @property
    def exhaustion_reset(self) -> Optional[timedelta]:
        if self.exhaustion_reset_hours is None:
            return None
        return timedelta(hours=self.exhaustion_reset_hours)


@dataclass(frozen=True)
class HistoryConfig:
    """History ledger storage and retention."""
    db_path: str = "image_relay.db"
    ttl_hours: float = 24
    max_items: int = 200

    def __post_init__(self):
        """Validate retention values."""
        if self.ttl_hours <= 0:
            raise ValueError("ttl_hours must be > 0")
        if self.max_items <= 0:
            raise ValueError("max_items must be > 0")

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


@dataclass(frozen=True)
class UpscaleConfig:
    """Optional upscale step chained after generation."""
    enabled: bool = False
    provider: str = "huggingface"
    scale: int = 4

    def __post_init__(self):
        """Validate scale factor."""
        if self.scale < 2:
            raise ValueError("upscale scale must be >= 2")


@dataclass(frozen=True)
class LLMConfig:
    """Providers used for prompt optimization and translation."""
    optimize_provider: str = "pollinations"
    optimize_model: Optional[str] = None
    translate_provider: str = "pollinations"
    translate_model: Optional[str] = "openai-fast"


@dataclass(frozen=True)
class GenerationDefaults:
    """Defaults applied when a request omits parameters."""
    provider: str = "huggingface"
    model: str = "z-image-turbo"
    width: int = 1024
    height: int = 1024
    steps: int = 9

    def __post_init__(self):
        """Validate default dimensions."""
        if self.width <= 0 or self.height <= 0:
            raise ValueError("default width and height must be > 0")
        if self.steps <= 0:
            raise ValueError("default steps must be > 0")


DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "huggingface": {"display_name": "HuggingFace", "requires_auth": False, "auth_header": "X-HF-Token"},
    "gitee": {"display_name": "Gitee AI", "requires_auth": True, "auth_header": "X-API-Key"},
    "modelscope": {"display_name": "ModelScope", "requires_auth": True, "auth_header": "X-MS-Token"},
    "pollinations": {"display_name": "Pollinations", "requires_auth": False, "auth_header": "Authorization"},
    "gitee-llm": {
        "display_name": "Gitee AI (LLM)",
        "requires_auth": True,
        "auth_header": "X-API-Key",
        "credential_pool": "gitee",
    },
    "modelscope-llm": {
        "display_name": "ModelScope (LLM)",
        "requires_auth": True,
        "auth_header": "X-MS-Token",
        "credential_pool": "modelscope",
    },
    "huggingface-llm": {
        "display_name": "HuggingFace (LLM)",
        "requires_auth": False,
        "auth_header": "X-HF-Token",
        "credential_pool": "huggingface",
    },
    "deepseek": {"display_name": "DeepSeek", "requires_auth": True, "auth_header": "X-DeepSeek-Token"},
}


def _default_providers() -> Dict[str, ProviderDescriptor]:
    return {
        provider_id: _parse_provider(provider_id, dict(data), f"providers.{provider_id}")
        for provider_id, data in DEFAULT_PROVIDERS.items()
    }


@dataclass(frozen=True)
class RelaySettings:
    """Complete relay configuration."""
    api_url: str = "http://127.0.0.1:8787"
    timeout_seconds: float = 120.0
    providers: Dict[str, ProviderDescriptor] = field(default_factory=_default_providers)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    upscale: UpscaleConfig = field(default_factory=UpscaleConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    defaults: GenerationDefaults = field(default_factory=GenerationDefaults)

    def __post_init__(self):
        """Validate cross-section references."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        referenced = {
            "upscale.provider": self.upscale.provider,
            "llm.optimize_provider": self.llm.optimize_provider,
            "llm.translate_provider": self.llm.translate_provider,
            "defaults.provider": self.defaults.provider,
        }
        for path, provider_id in referenced.items():
            if provider_id not in self.providers:
                raise ValueError(f"'{path}' refers to unknown provider '{provider_id}'")

    def provider(self, provider_id: str) -> ProviderDescriptor:
        """Look up a provider descriptor.

        Raises:
            KeyError: If the provider is not configured
        """
        try:
            return self.providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None


def load_settings(path: Optional[str] = None) -> RelaySettings:
    """Load and validate relay settings from a YAML file.

    Strict validation rejects unknown keys so that a typo never silently
    falls back to a default.

    Args:
        path: Path to YAML configuration file; None returns built-in defaults

    Returns:
        Validated RelaySettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return RelaySettings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Relay config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {
        'api_url', 'timeout_seconds', 'providers', 'orchestration',
        'history', 'upscale', 'llm', 'defaults'
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'api_url' in raw_config:
        api_url = raw_config['api_url']
        if not isinstance(api_url, str) or not api_url:
            raise ValueError("'api_url' must be a non-empty string")
        kwargs['api_url'] = api_url.rstrip('/')

    if 'timeout_seconds' in raw_config:
        kwargs['timeout_seconds'] = _number(raw_config['timeout_seconds'], 'timeout_seconds')

    # Providers extend (or override) the built-in catalog
    providers = _default_providers()
    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    for provider_id, provider_data in providers_data.items():
        if not isinstance(provider_data, dict):
            raise ValueError(f"Provider '{provider_id}' must be a dictionary")
        providers[provider_id] = _parse_provider(provider_id, provider_data, f"providers.{provider_id}")
    kwargs['providers'] = providers

    sections = {
        'orchestration': (OrchestrationConfig, {
            'max_attempts': int, 'transient_retries': int,
            'transient_backoff_seconds': float, 'exhaustion_reset_hours': float,
        }),
        'history': (HistoryConfig, {'db_path': str, 'ttl_hours': float, 'max_items': int}),
        'upscale': (UpscaleConfig, {'enabled': bool, 'provider': str, 'scale': int}),
        'llm': (LLMConfig, {
            'optimize_provider': str, 'optimize_model': str,
            'translate_provider': str, 'translate_model': str,
        }),
        'defaults': (GenerationDefaults, {
            'provider': str, 'model': str, 'width': int, 'height': int, 'steps': int,
        }),
    }
    for section, (section_cls, schema) in sections.items():
        if section in raw_config:
            kwargs[section] = section_cls(**_parse_section(raw_config[section], schema, section))

    return RelaySettings(**kwargs)


NULLABLE_KEYS = frozenset({'exhaustion_reset_hours', 'optimize_model', 'translate_model'})


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _parse_section(data: Any, schema: Dict[str, type], path: str) -> Dict[str, Any]:
    """Validate a flat section against a key -> type schema.

    Args:
        data: Raw section data
        schema: Allowed keys and their expected types
        path: Path for error messages

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema.keys())
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed: Dict[str, Any] = {}
    for key, value in data.items():
        expected = schema[key]
        if value is None:
            if key not in NULLABLE_KEYS:
                raise ValueError(f"'{key}' in {path} cannot be null")
            parsed[key] = None
        elif expected is bool:
            if not isinstance(value, bool):
                raise ValueError(f"'{key}' in {path} must be a boolean")
            parsed[key] = value
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {path} must be an integer")
            parsed[key] = value
        elif expected is float:
            parsed[key] = _number(value, f"{path}.{key}")
        else:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in {path} must be a string")
            parsed[key] = value
    return parsed


def _parse_provider(provider_id: str, data: Dict, path: str) -> ProviderDescriptor:
    """Parse and validate a provider descriptor.

    Args:
        provider_id: Provider key
        data: Provider configuration data
        path: Path for error messages

    Returns:
        Validated ProviderDescriptor

    Raises:
        ValueError: If configuration is invalid
    """
    schema = {'display_name': str, 'requires_auth': bool, 'auth_header': str, 'credential_pool': str}
    parsed = _parse_section(data, schema, path)

    if 'requires_auth' not in parsed or parsed['requires_auth'] is None:
        raise ValueError(f"Missing required 'requires_auth' in {path}")
    if not parsed.get('auth_header'):
        raise ValueError(f"Missing required 'auth_header' in {path}")

    return ProviderDescriptor(
        id=provider_id,
        display_name=parsed.get('display_name') or provider_id,
        requires_auth=parsed['requires_auth'],
        auth_header=parsed['auth_header'],
        credential_pool=parsed.get('credential_pool') or provider_id,
    )

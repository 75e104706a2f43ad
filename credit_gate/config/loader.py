"""
Configuration management and loading.

Holds the cost table, free-tier policy, rate-limit policy, input limits and
storage-failure policy as immutable structs, plus environment-driven runtime
settings.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from credit_gate.core.actions import ActionCategory, ActionType, FreeTierFeature


class FailurePolicy(Enum):
    """What a component does when its storage read or write fails."""
    FAIL_OPEN = "open"      # allow the action
    FAIL_CLOSED = "closed"  # abort the action


@dataclass(frozen=True)
class CostTable:
    """Credit cost per action type. Must cover every ActionType."""
    costs: Dict[ActionType, Decimal]

    def __post_init__(self):
        """Validate the table is exhaustive and costs are positive."""
        missing = set(ActionType) - set(self.costs)
        if missing:
            names = sorted(action.value for action in missing)
            raise ValueError(f"Cost table missing actions: {names}")
        for action, cost in self.costs.items():
            if cost <= 0:
                raise ValueError(f"cost for {action.value} must be > 0")

    def cost_for(self, action: ActionType) -> Decimal:
        return self.costs[action]


@dataclass(frozen=True)
class FreeTierAllowance:
    """Base allowance and purchasable top-up pack for one feature."""
    base_allowance: int
    pack_size: int
    pack_cost: Decimal
    scoped: bool

    def __post_init__(self):
        if self.base_allowance < 0:
            raise ValueError("base_allowance must be >= 0")
        if self.pack_size <= 0:
            raise ValueError("pack_size must be > 0")
        if self.pack_cost <= 0:
            raise ValueError("pack_cost must be > 0")

    def total_allowed(self, packs: int) -> int:
        return self.base_allowance + packs * self.pack_size


@dataclass(frozen=True)
class FreeTierPolicy:
    """Allowances for every free-tier feature."""
    allowances: Dict[FreeTierFeature, FreeTierAllowance]

    def __post_init__(self):
        missing = set(FreeTierFeature) - set(self.allowances)
        if missing:
            names = sorted(feature.value for feature in missing)
            raise ValueError(f"Free tier policy missing features: {names}")

    def get_allowance(self, feature: FreeTierFeature) -> FreeTierAllowance:
        return self.allowances[feature]


@dataclass(frozen=True)
class RateLimit:
    """Per-hour and per-day thresholds for one category."""
    per_hour: int
    per_day: int

    def __post_init__(self):
        if self.per_hour <= 0:
            raise ValueError("per_hour must be > 0")
        if self.per_day <= 0:
            raise ValueError("per_day must be > 0")


@dataclass(frozen=True)
class RateLimitPolicy:
    """Thresholds for every action category."""
    limits: Dict[ActionCategory, RateLimit]

    def __post_init__(self):
        missing = set(ActionCategory) - set(self.limits)
        if missing:
            names = sorted(category.value for category in missing)
            raise ValueError(f"Rate limit policy missing categories: {names}")

    def get_limit(self, category: ActionCategory) -> RateLimit:
        return self.limits[category]


@dataclass(frozen=True)
class FieldLimit:
    """Accepted length range for a text field, after trimming."""
    min_length: int
    max_length: int

    def __post_init__(self):
        if self.min_length < 0:
            raise ValueError("min must be >= 0")
        if self.max_length <= self.min_length:
            raise ValueError("max must be greater than min")


@dataclass(frozen=True)
class InputLimits:
    """Length bounds for natural-language payload fields."""
    fields: Dict[str, FieldLimit]

    def get_limit(self, name: str) -> FieldLimit:
        if name not in self.fields:
            raise ValueError(f"No input limit configured for field: {name}")
        return self.fields[name]


@dataclass(frozen=True)
class StorageFailurePolicy:
    """Named fail-open/fail-closed choice per component.

    The credit ledger has no entry: it always fails closed.
    """
    rate_limiter: FailurePolicy = FailurePolicy.FAIL_OPEN
    free_tier: FailurePolicy = FailurePolicy.FAIL_CLOSED


@dataclass(frozen=True)
class CreditGateConfig:
    """Complete accounting configuration."""
    costs: CostTable
    free_tier: FreeTierPolicy
    rate_limits: RateLimitPolicy
    input_limits: InputLimits
    storage_failure: StorageFailurePolicy = field(default_factory=StorageFailurePolicy)


def default_config() -> CreditGateConfig:
    """Built-in cost table and policies."""
    return CreditGateConfig(
        costs=CostTable({
            ActionType.GENERATION_FULL: Decimal("1.0"),
            ActionType.GENERATION_CV_ONLY: Decimal("0.75"),
            ActionType.GENERATION_COVER_ONLY: Decimal("0.25"),
            ActionType.REFINE_BULLET_SHORTER: Decimal("0.25"),
            ActionType.REFINE_BULLET_METRICS: Decimal("0.25"),
            ActionType.REFINE_BULLET_REPHRASE: Decimal("0.25"),
            ActionType.REFINE_COVER_SHORTER: Decimal("0.25"),
            ActionType.REFINE_COVER_REGENERATE: Decimal("0.5"),
            ActionType.SMART_REPLY: Decimal("0.1"),
        }),
        free_tier=FreeTierPolicy({
            FreeTierFeature.EDITS: FreeTierAllowance(
                base_allowance=5, pack_size=5, pack_cost=Decimal("0.25"), scoped=True
            ),
            FreeTierFeature.REPLIES: FreeTierAllowance(
                base_allowance=3, pack_size=5, pack_cost=Decimal("0.10"), scoped=False
            ),
        }),
        rate_limits=RateLimitPolicy({
            ActionCategory.GENERATION: RateLimit(per_hour=30, per_day=100),
            ActionCategory.REFINEMENT: RateLimit(per_hour=60, per_day=200),
            ActionCategory.REPLY: RateLimit(per_hour=60, per_day=200),
        }),
        input_limits=InputLimits({
            "job_description": FieldLimit(50, 10000),
            "bullet": FieldLimit(10, 500),
            "cover_letter": FieldLimit(50, 2000),
            "pasted_message": FieldLimit(20, 10000),
            "short_text": FieldLimit(0, 2000),
        }),
    )


def load_config(path: str) -> CreditGateConfig:
    """Load and validate accounting configuration from a YAML file.

    Sections left out of the file keep their default values. Entries inside
    a section override the matching default entry only.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CreditGateConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'costs', 'free_tier', 'rate_limits', 'input_limits', 'storage_failure'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    config = default_config()

    if 'costs' in raw_config:
        config = replace(config, costs=_parse_costs(raw_config['costs'], config.costs))
    if 'free_tier' in raw_config:
        config = replace(config, free_tier=_parse_free_tier(raw_config['free_tier'], config.free_tier))
    if 'rate_limits' in raw_config:
        config = replace(config, rate_limits=_parse_rate_limits(raw_config['rate_limits'], config.rate_limits))
    if 'input_limits' in raw_config:
        config = replace(config, input_limits=_parse_input_limits(raw_config['input_limits'], config.input_limits))
    if 'storage_failure' in raw_config:
        config = replace(config, storage_failure=_parse_storage_failure(raw_config['storage_failure']))

    return config


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str, required: Optional[set] = None) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")
    for key in sorted(required or ()):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")


def _parse_decimal(value: Any, path: str) -> Decimal:
    """Parse a positive credit amount without float rounding artifacts."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValueError(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if amount <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return amount


def _parse_int(value: Any, path: str, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{path}' must be >= {minimum}")
    return value


def _parse_costs(data: Any, defaults: CostTable) -> CostTable:
    data = _require_dict(data, "costs")
    costs = dict(defaults.costs)
    for name, value in data.items():
        try:
            action = ActionType(name)
        except ValueError:
            valid = [action.value for action in ActionType]
            raise ValueError(f"Unknown action in costs: {name!r}. Must be one of: {valid}")
        costs[action] = _parse_decimal(value, f"costs.{name}")
    return CostTable(costs)


def _parse_free_tier(data: Any, defaults: FreeTierPolicy) -> FreeTierPolicy:
    data = _require_dict(data, "free_tier")
    allowances = dict(defaults.allowances)
    for name, entry in data.items():
        try:
            feature = FreeTierFeature(name)
        except ValueError:
            valid = [feature.value for feature in FreeTierFeature]
            raise ValueError(f"Unknown free tier feature: {name!r}. Must be one of: {valid}")
        path = f"free_tier.{name}"
        entry = _require_dict(entry, path)
        _check_keys(entry, {'base_allowance', 'pack_size', 'pack_cost'}, path)
        current = allowances[feature]
        allowances[feature] = FreeTierAllowance(
            base_allowance=_parse_int(
                entry.get('base_allowance', current.base_allowance), f"{path}.base_allowance", minimum=0
            ),
            pack_size=_parse_int(entry.get('pack_size', current.pack_size), f"{path}.pack_size"),
            pack_cost=_parse_decimal(entry.get('pack_cost', current.pack_cost), f"{path}.pack_cost"),
            scoped=current.scoped,
        )
    return FreeTierPolicy(allowances)


def _parse_rate_limits(data: Any, defaults: RateLimitPolicy) -> RateLimitPolicy:
    data = _require_dict(data, "rate_limits")
    limits = dict(defaults.limits)
    for name, entry in data.items():
        try:
            category = ActionCategory(name)
        except ValueError:
            valid = [category.value for category in ActionCategory]
            raise ValueError(f"Unknown rate limit category: {name!r}. Must be one of: {valid}")
        path = f"rate_limits.{name}"
        entry = _require_dict(entry, path)
        _check_keys(entry, {'per_hour', 'per_day'}, path, required={'per_hour', 'per_day'})
        limits[category] = RateLimit(
            per_hour=_parse_int(entry['per_hour'], f"{path}.per_hour"),
            per_day=_parse_int(entry['per_day'], f"{path}.per_day"),
        )
    return RateLimitPolicy(limits)


def _parse_input_limits(data: Any, defaults: InputLimits) -> InputLimits:
    data = _require_dict(data, "input_limits")
    fields = dict(defaults.fields)
    for name, entry in data.items():
        if name not in fields:
            raise ValueError(f"Unknown input field: {name!r}. Must be one of: {sorted(fields)}")
        path = f"input_limits.{name}"
        entry = _require_dict(entry, path)
        _check_keys(entry, {'min', 'max'}, path, required={'min', 'max'})
        fields[name] = FieldLimit(
            min_length=_parse_int(entry['min'], f"{path}.min", minimum=0),
            max_length=_parse_int(entry['max'], f"{path}.max"),
        )
    return InputLimits(fields)


def _parse_storage_failure(data: Any) -> StorageFailurePolicy:
    data = _require_dict(data, "storage_failure")
    _check_keys(data, {'rate_limiter', 'free_tier'}, "storage_failure")
    policies = {}
    for name, value in data.items():
        if not isinstance(value, str):
            raise ValueError(f"'storage_failure.{name}' must be a string")
        try:
            policies[name] = FailurePolicy(value.lower())
        except ValueError:
            valid = [policy.value for policy in FailurePolicy]
            raise ValueError(f"'storage_failure.{name}' must be one of: {valid}")
    return StorageFailurePolicy(**policies)


@dataclass(frozen=True)
class RuntimeSettings:
    """Deployment settings read from CREDIT_GATE_* environment variables."""
    db_path: str = "credit_gate.db"
    config_path: Optional[str] = None
    jwt_secret: str = ""
    jwt_audience: Optional[str] = "authenticated"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: Optional[str] = None
    llm_timeout_seconds: float = 60.0
    llm_max_retries: int = 1

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        try:
            timeout = float(env.get("CREDIT_GATE_LLM_TIMEOUT", defaults.llm_timeout_seconds))
            retries = int(env.get("CREDIT_GATE_LLM_MAX_RETRIES", defaults.llm_max_retries))
        except ValueError as e:
            raise ValueError(f"Invalid numeric LLM setting: {e}")
        if timeout <= 0:
            raise ValueError("CREDIT_GATE_LLM_TIMEOUT must be > 0")
        return cls(
            db_path=env.get("CREDIT_GATE_DB_PATH", defaults.db_path),
            config_path=env.get("CREDIT_GATE_CONFIG") or None,
            jwt_secret=env.get("CREDIT_GATE_JWT_SECRET", defaults.jwt_secret),
            jwt_audience=env.get("CREDIT_GATE_JWT_AUDIENCE", defaults.jwt_audience) or None,
            llm_model=env.get("CREDIT_GATE_LLM_MODEL", defaults.llm_model),
            llm_base_url=env.get("CREDIT_GATE_LLM_BASE_URL") or None,
            llm_timeout_seconds=timeout,
            llm_max_retries=retries,
        )

    def load_accounting_config(self) -> CreditGateConfig:
        """Accounting config from the configured YAML file, or defaults."""
        if self.config_path:
            return load_config(self.config_path)
        return default_config()

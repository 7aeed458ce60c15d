"""
Parameter set validation.

A ParameterSet is the single validated configuration object consumed by
every pipeline stage. It is checked once at construction and cannot be
modified afterwards.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .exceptions import ValidationError, ValidationIssue

logger = logging.getLogger(__name__)


VARIABLES = ('price', 'volume', 'market_cap')
NORMALIZATION_METHODS = ('minmax', 'standard', 'robust')
INTERPOLATION_METHODS = ('linear', 'polynomial', 'spline')

SPLIT_TOLERANCE = 0.001

# Valid ranges for hyperparameters shared by all forecasters
HYPERPARAMETER_RANGES = {
    'epochs': (1, 100),
    'batch_size': (16, 512),
    'learning_rate': (0.0, 1.0),
}


@dataclass(frozen=True)
class Split:
    """Chronological train/validation/test fractions."""
    train: float
    validation: float
    test: float

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.train, self.validation, self.test)


@dataclass(frozen=True)
class ParameterSet:
    """Validated, immutable pipeline configuration."""
    assets: FrozenSet[str]
    date_range: Tuple[date, date]
    variables: FrozenSet[str]
    normalization: str
    interpolation: str
    split: Split
    hyperparameters: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    target: str = 'price'
    allow_partial: bool = False
    missing_value_threshold: float = 0.05

    @property
    def start(self) -> date:
        return self.date_range[0]

    @property
    def end(self) -> date:
        return self.date_range[1]

    @property
    def ordered_assets(self) -> List[str]:
        """Assets in a stable order."""
        return sorted(self.assets)

    @property
    def ordered_variables(self) -> List[str]:
        return [v for v in VARIABLES if v in self.variables]

    def hyperparameters_for(self, model_name: str) -> Dict[str, Any]:
        """Return a fresh copy of the settings for one model."""
        return dict(self.hyperparameters.get(model_name, {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'assets': self.ordered_assets,
            'start_date': self.start.isoformat(),
            'end_date': self.end.isoformat(),
            'variables': self.ordered_variables,
            'normalization': self.normalization,
            'interpolation': self.interpolation,
            'split': {
                'train': self.split.train,
                'validation': self.split.validation,
                'test': self.split.test,
            },
            'hyperparameters': {k: dict(v) for k, v in self.hyperparameters.items()},
            'target': self.target,
            'allow_partial': self.allow_partial,
            'missing_value_threshold': self.missing_value_threshold,
        }


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), '%Y-%m-%d').date()
        except ValueError:
            return None
    return None


def _parse_split(raw_split: Any, issues: List[ValidationIssue]) -> Optional[Split]:
    if isinstance(raw_split, Mapping):
        values = [raw_split.get('train'), raw_split.get('validation'), raw_split.get('test')]
    elif isinstance(raw_split, (list, tuple)) and len(raw_split) == 3:
        values = list(raw_split)
    else:
        issues.append(ValidationIssue(
            'split', 'must be a (train, validation, test) triple or mapping'
        ))
        return None

    try:
        train, validation, test = (float(v) for v in values)
    except (TypeError, ValueError):
        issues.append(ValidationIssue('split', f'fractions must be numeric, got {values}'))
        return None

    split = Split(train, validation, test)
    total = train + validation + test

    if abs(total - 1.0) > SPLIT_TOLERANCE:
        issues.append(ValidationIssue(
            'split', f'fractions must sum to 1.0 (±{SPLIT_TOLERANCE}), got {total:.4f}'
        ))
    for name, value in zip(('train', 'validation', 'test'), split.as_tuple()):
        if not 0.0 <= value < 1.0:
            issues.append(ValidationIssue(f'split.{name}', f'must be in [0, 1), got {value}'))
    if train <= 0.0:
        issues.append(ValidationIssue('split.train', 'must be greater than 0'))
    if test <= 0.0:
        issues.append(ValidationIssue('split.test', 'must be greater than 0'))

    return split


def _check_hyperparameters(
    raw: Any,
    issues: List[ValidationIssue]
) -> Dict[str, Mapping[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        issues.append(ValidationIssue('hyperparameters', 'must map model names to settings'))
        return {}

    checked = {}
    for model_name, settings in raw.items():
        prefix = f'hyperparameters.{model_name}'
        if not isinstance(settings, Mapping):
            issues.append(ValidationIssue(prefix, 'settings must be a mapping'))
            continue

        for key, value in settings.items():
            if isinstance(value, bool) or value is None:
                continue
            if not isinstance(value, (int, float, str, list, tuple)):
                issues.append(ValidationIssue(
                    f'{prefix}.{key}', f'unsupported value type {type(value).__name__}'
                ))
                continue

            if key in HYPERPARAMETER_RANGES:
                low, high = HYPERPARAMETER_RANGES[key]
                if not isinstance(value, (int, float)):
                    issues.append(ValidationIssue(f'{prefix}.{key}', 'must be numeric'))
                elif key == 'learning_rate' and not low < value <= high:
                    issues.append(ValidationIssue(
                        f'{prefix}.{key}', f'must be in ({low}, {high}], got {value}'
                    ))
                elif key != 'learning_rate' and not low <= value <= high:
                    issues.append(ValidationIssue(
                        f'{prefix}.{key}', f'must be between {low} and {high}, got {value}'
                    ))

        checked[model_name] = MappingProxyType(dict(settings))

    return checked


def collect_issues(raw: Mapping[str, Any]) -> List[ValidationIssue]:
    """Return every violation in ``raw`` without raising."""
    try:
        validate(raw)
    except ValidationError as e:
        return e.issues
    return []


def validate(raw: Mapping[str, Any]) -> ParameterSet:
    """
    Validate raw parameters and build a ParameterSet.

    Args:
        raw: Mapping as collected from a form, CLI or config file

    Returns:
        The validated ParameterSet

    Raises:
        ValidationError: with the full list of violations
    """
    issues: List[ValidationIssue] = []

    # Assets
    raw_assets = raw.get('assets') or raw.get('cryptocurrencies') or []
    if isinstance(raw_assets, str):
        raw_assets = [raw_assets]
    assets = frozenset(str(a).strip().lower() for a in raw_assets if str(a).strip())
    if not assets:
        issues.append(ValidationIssue('assets', 'at least one asset must be selected'))

    # Date range
    if 'date_range' in raw:
        start_raw, end_raw = (list(raw['date_range']) + [None, None])[:2]
    else:
        start_raw, end_raw = raw.get('start_date'), raw.get('end_date')
    start, end = _parse_date(start_raw), _parse_date(end_raw)
    if start is None:
        issues.append(ValidationIssue('start_date', f'invalid date: {start_raw!r}'))
    if end is None:
        issues.append(ValidationIssue('end_date', f'invalid date: {end_raw!r}'))
    if start is not None and end is not None and start >= end:
        issues.append(ValidationIssue('date_range', f'start {start} must be before end {end}'))

    # Variables
    raw_variables = raw.get('variables') or list(VARIABLES)
    variables = frozenset(str(v) for v in raw_variables)
    unknown = sorted(variables - set(VARIABLES))
    if unknown:
        issues.append(ValidationIssue('variables', f'unknown variables: {unknown}'))
    if not variables:
        issues.append(ValidationIssue('variables', 'at least one variable is required'))

    normalization = raw.get('normalization', 'minmax')
    if normalization not in NORMALIZATION_METHODS:
        issues.append(ValidationIssue(
            'normalization', f'must be one of {NORMALIZATION_METHODS}, got {normalization!r}'
        ))

    interpolation = raw.get('interpolation', 'linear')
    if interpolation not in INTERPOLATION_METHODS:
        issues.append(ValidationIssue(
            'interpolation', f'must be one of {INTERPOLATION_METHODS}, got {interpolation!r}'
        ))

    split = _parse_split(raw.get('split', (0.8, 0.1, 0.1)), issues)

    hyperparameters = _check_hyperparameters(raw.get('hyperparameters'), issues)

    target = raw.get('target', 'price')
    if target not in variables:
        issues.append(ValidationIssue('target', f'{target!r} is not among the selected variables'))

    threshold = raw.get('missing_value_threshold', 0.05)
    if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 1.0:
        issues.append(ValidationIssue(
            'missing_value_threshold', f'must be a fraction in [0, 1], got {threshold!r}'
        ))

    if issues:
        logger.warning(f"Parameter validation failed with {len(issues)} issue(s)")
        for issue in issues:
            logger.warning(f"  ✗ {issue}")
        raise ValidationError(issues)

    return ParameterSet(
        assets=assets,
        date_range=(start, end),
        variables=variables,
        normalization=normalization,
        interpolation=interpolation,
        split=split,
        hyperparameters=MappingProxyType(hyperparameters),
        target=target,
        allow_partial=bool(raw.get('allow_partial', False)),
        missing_value_threshold=float(threshold),
    )

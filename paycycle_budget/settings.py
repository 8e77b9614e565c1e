"""Settings provider for pay days, currency and timezone.

Settings live in a small JSON file.  Missing or unusable values fall back
to the defaults in :mod:`paycycle_budget.config`, so the engine can always
compute period boundaries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .config import DEFAULT_CURRENCY, DEFAULT_PAY_DAYS, DEFAULT_TIMEZONE, SETTINGS_PATH
from .errors import ValidationError
from .periods import validate_pay_days

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    pay_days: Tuple[int, int] = DEFAULT_PAY_DAYS
    currency: str = DEFAULT_CURRENCY
    timezone: str = DEFAULT_TIMEZONE
    default_template_id: Optional[str] = None


DEFAULT_SETTINGS = Settings()


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    pay_days = DEFAULT_PAY_DAYS
    if data.get('pay_days') is not None:
        try:
            pay_days = validate_pay_days(data['pay_days'])
        except ValidationError as exc:
            logger.warning("Ignoring invalid pay days in settings: %s", exc)
    currency = data.get('currency')
    timezone = data.get('timezone')
    template_id = data.get('default_template_id')
    return Settings(
        pay_days=pay_days,
        currency=currency.upper() if isinstance(currency, str) and currency.strip() else DEFAULT_CURRENCY,
        timezone=timezone if isinstance(timezone, str) and timezone.strip() else DEFAULT_TIMEZONE,
        default_template_id=template_id if isinstance(template_id, str) else None,
    )


def load_settings(path: Path | None = None) -> Settings:
    target = path or SETTINGS_PATH
    if not target.exists():
        return DEFAULT_SETTINGS
    try:
        with target.open('r', encoding='utf-8') as handle:
            data = json.load(handle)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read settings from %s: %s", target, exc)
        return DEFAULT_SETTINGS
    if not isinstance(data, dict):
        return DEFAULT_SETTINGS
    return settings_from_dict(data)


def save_settings(settings: Settings, path: Path | None = None) -> None:
    validate_pay_days(settings.pay_days)
    target = path or SETTINGS_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = asdict(settings)
    payload['pay_days'] = list(settings.pay_days)
    with target.open('w', encoding='utf-8') as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)

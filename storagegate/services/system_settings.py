from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.core.errors import InvalidSettingError
from storagegate.domain.models import SystemSetting


logger = logging.getLogger(__name__)

BLOCK_DOWNLOADS_ON_OVERAGE = "block_downloads_on_overage"
EGRESS_ALERT_THRESHOLDS = "egress_alert_thresholds"
STORAGE_ALERT_THRESHOLDS = "storage_alert_thresholds"
DEFAULT_STORAGE_QUOTA_GB = "default_storage_quota_gb"
EGRESS_FREE_LIMIT_GB = "egress_free_limit_gb"
EGRESS_OVERAGE_PRICE_PER_GB = "egress_overage_price_per_gb"
STORAGE_PRICE_PER_GB = "storage_price_per_gb"


@dataclass(frozen=True)
class SettingSpec:
    description: str
    default: Callable[[], Any]
    validate: Callable[[Any], Any]


def _validate_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidSettingError("Value must be a boolean")
    return value


def _validate_non_negative_number(value: Any) -> float:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise InvalidSettingError("Value must be a non-negative number")
    return float(value)


def _validate_thresholds(value: Any) -> list[int]:
    # Thresholds are whole percentages; duplicates collapse and order is normalized.
    if not isinstance(value, list) or not value:
        raise InvalidSettingError("Thresholds must be a non-empty list of integers")
    cleaned: set[int] = set()
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int) or item <= 0:
            raise InvalidSettingError("Thresholds must be positive integers")
        cleaned.add(item)
    return sorted(cleaned)


_SPECS: dict[str, SettingSpec] = {
    BLOCK_DOWNLOADS_ON_OVERAGE: SettingSpec(
        description="Block downloads once monthly egress reaches the free limit",
        default=lambda: get_settings().default_block_downloads_on_overage,
        validate=_validate_bool,
    ),
    EGRESS_ALERT_THRESHOLDS: SettingSpec(
        description="Egress usage percentages that raise alerts",
        default=lambda: list(get_settings().default_alert_thresholds),
        validate=_validate_thresholds,
    ),
    STORAGE_ALERT_THRESHOLDS: SettingSpec(
        description="Storage usage percentages that raise alerts",
        default=lambda: list(get_settings().default_alert_thresholds),
        validate=_validate_thresholds,
    ),
    DEFAULT_STORAGE_QUOTA_GB: SettingSpec(
        description="Storage quota assigned to newly provisioned tenants",
        default=lambda: get_settings().default_storage_quota_gb,
        validate=_validate_non_negative_number,
    ),
    EGRESS_FREE_LIMIT_GB: SettingSpec(
        description="Monthly free egress assigned to newly provisioned tenants",
        default=lambda: get_settings().default_egress_free_limit_gb,
        validate=_validate_non_negative_number,
    ),
    EGRESS_OVERAGE_PRICE_PER_GB: SettingSpec(
        description="Price per GB of egress beyond the free limit",
        default=lambda: 0.0,
        validate=_validate_non_negative_number,
    ),
    STORAGE_PRICE_PER_GB: SettingSpec(
        description="Price per GB of stored data per month",
        default=lambda: 0.0,
        validate=_validate_non_negative_number,
    ),
}


def known_keys() -> list[str]:
    return sorted(_SPECS)


async def get_setting(session: AsyncSession, key: str) -> Any:
    # Settings are read at decision time so admin changes apply to the next request.
    spec = _SPECS.get(key)
    if spec is None:
        raise InvalidSettingError(f"Unknown setting: {key}", details={"key": key})
    result = await session.execute(select(SystemSetting.value_json).where(SystemSetting.key == key))
    row = result.first()
    if row is None:
        return spec.default()
    try:
        return spec.validate(row[0])
    except InvalidSettingError:
        # A hand-edited row should not take the gate down; fall back and make it visible.
        logger.warning("system_setting_invalid key=%s value=%r", key, row[0])
        return spec.default()


async def get_all_settings(session: AsyncSession) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key in known_keys():
        values[key] = await get_setting(session, key)
    return values


async def put_setting(
    session: AsyncSession,
    key: str,
    value: Any,
    *,
    updated_by: str | None = None,
) -> Any:
    spec = _SPECS.get(key)
    if spec is None:
        raise InvalidSettingError(f"Unknown setting: {key}", details={"key": key})
    cleaned = spec.validate(value)
    result = await session.execute(select(SystemSetting).where(SystemSetting.key == key))
    row = result.scalar_one_or_none()
    if row is None:
        row = SystemSetting(key=key, description=spec.description)
        session.add(row)
    row.value_json = cleaned
    row.updated_by = updated_by
    await session.commit()
    logger.info("system_setting_updated key=%s updated_by=%s", key, updated_by)
    return cleaned


async def block_downloads_on_overage(session: AsyncSession) -> bool:
    return bool(await get_setting(session, BLOCK_DOWNLOADS_ON_OVERAGE))


async def alert_thresholds(session: AsyncSession, key: str) -> list[int]:
    return list(await get_setting(session, key))

"""Operation parameter validation shared by both workflow models."""

from __future__ import annotations

from typing import TYPE_CHECKING

from web3 import Web3

from secure_ops.domain.enums import OperationType
from secure_ops.domain.exceptions import InvalidOperationParams

if TYPE_CHECKING:
    from secure_ops.config import Settings
    from secure_ops.domain.registry import OperationSpec

ADDRESS_PARAMS = frozenset({"new_owner", "new_broadcaster", "new_recovery", "to", "from", "token"})
INTEGER_PARAMS = frozenset({"amount", "new_timelock_period_seconds"})


def require_address(value: str, label: str = "address") -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidOperationParams(f"{label} is not a valid address: {value!r}")
    return value


def _require_integer(value: object, label: str) -> int:
    # bool is an int subclass and int() would truncate 1.5 to 1
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidOperationParams(f"{label} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as err:
        raise InvalidOperationParams(f"{label} must be an integer") from err


def validate_params(spec: OperationSpec, params: dict | None, settings: Settings) -> dict:
    """Check that ``params`` carries what ``spec`` needs and respects policy.

    Integer parameters are coerced to int; the returned dict is a copy.
    """
    params = dict(params or {})
    missing = [key for key in spec.param_keys if params.get(key) in (None, "")]
    if missing:
        raise InvalidOperationParams(
            f"{spec.operation_type} requires parameters: {', '.join(missing)}"
        )

    for key, value in params.items():
        if key in ADDRESS_PARAMS:
            require_address(value, key)
        elif key in INTEGER_PARAMS:
            params[key] = _require_integer(value, key)

    if "amount" in params and params["amount"] <= 0:
        raise InvalidOperationParams("amount must be positive")

    if spec.operation_type == OperationType.TIMELOCK_UPDATE:
        low, high = settings.timelock_bounds_seconds
        if not low <= params["new_timelock_period_seconds"] <= high:
            raise InvalidOperationParams(
                f"Time-lock period must be between {settings.timelock_min_days} "
                f"and {settings.timelock_max_days} days"
            )
    return params

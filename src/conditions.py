"""
DeviceLink status conditions.

The limb tracks four ordered conditions. A missing condition reads as
Unknown.

A reconcile pass writes only the condition of the stage it stops at and
leaves later conditions as they were, with one exception. Re-opening a
condition with :func:`to_check` is an explicit reset: every recorded
condition after it also returns to Unknown, so a link whose adaptor went
away does not keep reporting DeviceConnected=True. Conditions that were
never recorded are not added.
"""

from datetime import datetime, timezone
from typing import List, Optional

from models import Condition, ConditionStatus, DeviceLinkStatus

MODEL_EXISTED = "ModelExisted"
ADAPTOR_EXISTED = "AdaptorExisted"
DEVICE_CREATED = "DeviceCreated"
DEVICE_CONNECTED = "DeviceConnected"

CONDITION_ORDER: List[str] = [
    MODEL_EXISTED,
    ADAPTOR_EXISTED,
    DEVICE_CREATED,
    DEVICE_CONNECTED,
]

REASON_SUCCEEDED = "Succeeded"
REASON_FAILED = "Failed"
REASON_CHECKING = "Checking"
REASON_MODEL_NOT_REGISTERED = "ModelNotRegistered"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_condition(status: DeviceLinkStatus, condition_type: str) -> Optional[Condition]:
    """Return the condition of the given type, if recorded."""
    for condition in status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def get_status(status: DeviceLinkStatus, condition_type: str) -> ConditionStatus:
    """Return the tri-state value of a condition (Unknown when absent)."""
    condition = get_condition(status, condition_type)
    if condition is None:
        return ConditionStatus.UNKNOWN
    return condition.status


def set_condition(
    status: DeviceLinkStatus,
    condition_type: str,
    value: ConditionStatus,
    reason: str = "",
    message: str = "",
) -> None:
    """
    Record a condition, keeping the conditions list in stage order.

    The transition time only moves when the tri-state value changes.
    """
    now = _now()
    condition = get_condition(status, condition_type)
    if condition is None:
        condition = Condition(type=condition_type, last_transition_time=now)
        status.conditions.append(condition)
        status.conditions.sort(key=_order_index)
    elif condition.status != value:
        condition.last_transition_time = now

    condition.status = value
    condition.reason = reason
    condition.message = message
    condition.last_update_time = now


def _order_index(condition: Condition) -> int:
    try:
        return CONDITION_ORDER.index(condition.type)
    except ValueError:
        return len(CONDITION_ORDER)


def success_on(status: DeviceLinkStatus, condition_type: str, message: str = "") -> None:
    set_condition(
        status, condition_type, ConditionStatus.TRUE, REASON_SUCCEEDED, message
    )


def fail_on(
    status: DeviceLinkStatus,
    condition_type: str,
    message: str,
    reason: str = REASON_FAILED,
) -> None:
    set_condition(status, condition_type, ConditionStatus.FALSE, reason, message)


def to_check(status: DeviceLinkStatus, condition_type: str) -> None:
    """
    Re-open a condition and every recorded condition after it.

    This is the only place a stage rewrites conditions other than its own.
    """
    set_condition(status, condition_type, ConditionStatus.UNKNOWN, REASON_CHECKING)

    if condition_type not in CONDITION_ORDER:
        return
    later = CONDITION_ORDER[CONDITION_ORDER.index(condition_type) + 1 :]
    for condition in status.conditions:
        if condition.type in later and condition.status != ConditionStatus.UNKNOWN:
            set_condition(
                status, condition.type, ConditionStatus.UNKNOWN, REASON_CHECKING
            )

from __future__ import annotations

from enum import Enum

KEY_SEPARATOR = ":"


class Stage(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    APPROVED_PICKUP = "approved:pickup"

    @property
    def prefix(self) -> str:
        return f"{self.value}{KEY_SEPARATOR}"

    def owns(self, key: str) -> bool:
        """True when ``key`` is ``<stage>:<orderId>`` for this exact stage.

        ``approved:`` is a prefix of ``approved:pickup:``, so a plain prefix
        test is not enough to tell the two stages apart.
        """
        if not key.startswith(self.prefix):
            return False
        order_id = key[len(self.prefix) :]
        return is_valid_order_id(order_id)


def is_valid_order_id(order_id: str) -> bool:
    return bool(order_id) and KEY_SEPARATOR not in order_id


def stage_key(stage: Stage, order_id: str) -> str:
    if not is_valid_order_id(order_id):
        raise ValueError(f"invalid order id: {order_id!r}")
    return f"{stage.prefix}{order_id}"


def parse_key(key: str) -> tuple[Stage, str] | None:
    # Longest prefix first so approved:pickup:<id> is not read as approved:<id>.
    for stage in sorted(Stage, key=lambda item: len(item.value), reverse=True):
        if stage.owns(key):
            return stage, key[len(stage.prefix) :]
    return None


def parse_legacy_pending_key(key: str) -> tuple[str, str] | None:
    """Split ``pending:<intakeMethod>:<orderId>`` into its two discriminators."""
    if not key.startswith(Stage.PENDING.prefix):
        return None
    intake_method, separator, order_id = key[len(Stage.PENDING.prefix) :].partition(KEY_SEPARATOR)
    if not separator or not intake_method or not is_valid_order_id(order_id):
        return None
    return intake_method, order_id

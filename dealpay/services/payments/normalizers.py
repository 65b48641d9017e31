"""Gateway-specific notification vocabulary mapped to internal order statuses.

Each provider adapter knows where its notifications carry the correlation id
and the status field, and how to translate that status. Anything a provider
sends that is not recognized maps to `pending`.
"""

from typing import Any

from dealpay.common.state_machine import CANCELLED, COMPLETED, FAILED, PENDING


MYPOS_STATUS_MAP: dict[str, str] = {
    "success": COMPLETED,
    "failed": FAILED,
    "cancelled": CANCELLED,
}

VIVA_WALLET_STATUS_MAP: dict[str, str] = {
    "F": COMPLETED,
    "C": CANCELLED,
    "E": FAILED,
}


def normalize_mypos_status(value: Any) -> str:
    """Case-insensitive myPOS status word to internal status."""

    if not isinstance(value, str):
        return PENDING
    return MYPOS_STATUS_MAP.get(value.strip().lower(), PENDING)


def normalize_viva_wallet_status(value: Any) -> str:
    """Viva Wallet single-letter `StatusId` to internal status."""

    if not isinstance(value, str):
        return PENDING
    return VIVA_WALLET_STATUS_MAP.get(value.strip(), PENDING)


def _coerce_identifier(value: Any) -> str | None:
    # Viva Wallet sends numeric order codes; JSON may decode them as ints.
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ProviderAdapter:
    """Reads one provider's notification shape."""

    name = ""
    correlation_field = ""
    status_field = ""

    def correlation_id(self, payload: dict[str, Any]) -> str | None:
        return _coerce_identifier(payload.get(self.correlation_field))

    def normalize(self, payload: dict[str, Any]) -> str:
        raise NotImplementedError


class MyPosAdapter(ProviderAdapter):
    name = "mypos"
    correlation_field = "order_id"
    status_field = "status"

    def normalize(self, payload: dict[str, Any]) -> str:
        return normalize_mypos_status(payload.get(self.status_field))


class VivaWalletAdapter(ProviderAdapter):
    name = "viva_wallet"
    correlation_field = "OrderCode"
    status_field = "StatusId"

    def normalize(self, payload: dict[str, Any]) -> str:
        return normalize_viva_wallet_status(payload.get(self.status_field))


MYPOS = MyPosAdapter()
VIVA_WALLET = VivaWalletAdapter()

from uuid import uuid4

import telnyx
from telnyx.error import TelnyxError

from app.types.scheduling import CallResult, CallTarget
from app.utils.log import get_logger
from config import settings

TELNYX_API_KEY = settings.TELNYX_API_KEY
CONNECTION_ID = settings.TELNYX_CONNECTION_ID
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY

logger = get_logger(__name__)


def configured_target() -> CallTarget:
    """The fixed from/to pair every scheduled call dials."""
    return CallTarget(
        to_number=settings.CALL_TO_NUMBER,
        from_number=settings.TELNYX_FROM_NUMBER,
    )


def place_call(target: CallTarget) -> CallResult:
    """Place an outbound call through Telnyx Call Control.

    Provider-side rejections come back as a failed ``CallResult``; anything
    else (bugs, interpreter errors) propagates to the caller.
    """
    if not TELNYX_API_KEY or not CONNECTION_ID:
        confirmation_id = f"dev-{uuid4().hex[:12]}"
        logger.info(
            "dev_mode_call",
            to=target.to_number,
            from_=target.from_number,
            confirmation_id=confirmation_id,
        )
        return CallResult.success(confirmation_id)

    try:
        call = telnyx.Call.create(
            connection_id=CONNECTION_ID,
            to=target.to_number,
            from_=target.from_number,
        )
    except TelnyxError as exc:
        logger.warning("telnyx_call_rejected", to=target.to_number, error=str(exc))
        return CallResult.failure(str(exc))

    call_control_id = getattr(call, "call_control_id", None)
    if not call_control_id:
        return CallResult.failure("Telnyx response missing call_control_id")
    return CallResult.success(call_control_id)

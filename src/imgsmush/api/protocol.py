from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from imgsmush.models import Mode
from imgsmush.service import SmushService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepResponse:
    status: int
    body: dict[str, Any]


def _int_arg(args: dict[str, Any], name: str) -> int | None:
    raw = args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(str(raw))
    except ValueError:
        return None


class StepProtocol:
    """Routes polling-client requests to the service.

    ``bulk`` returns one page of the bulk worklist; ``optimize`` handles one
    worklist entry or a manual optimize click.
    """

    def __init__(self, service: SmushService):
        self.service = service

    def handle(self, action: str, args: dict[str, Any]) -> StepResponse:
        try:
            if action == "health":
                return StepResponse(200, {"ok": True})

            if action == "bulk":
                start = _int_arg(args, "start") or 0
                return StepResponse(200, self.service.bulk_step(start))

            if action == "optimize":
                mode = Mode.BULK if str(args.get("bulk", "")) == "1" else Mode.MANUAL
                result = self.service.optimize(
                    str(args.get("file") or ""),
                    item_id=_int_arg(args, "id"),
                    mode=mode,
                )
                return StepResponse(200, result)

            if action == "tools":
                return StepResponse(200, {"tools": self.service.tools()})

            return StepResponse(404, {"ok": False, "error": f"unknown action: {action}"})
        except Exception as exc:  # pragma: no cover
            logger.exception("step %s failed", action)
            return StepResponse(500, {"ok": False, "error": str(exc)})

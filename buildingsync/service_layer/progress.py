# buildingsync/service_layer/progress.py
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Iterator, Union

from pydantic import BaseModel

from ..schemas import CompleteEvent, ErrorEvent, ProgressEvent

log = logging.getLogger(__name__)

Event = Union[ProgressEvent, CompleteEvent, ErrorEvent]

_PREFIX = "data:"


def encode_event(event: BaseModel) -> str:
    """One server-sent-event frame: `data:<json>` plus a blank line."""
    return f"{_PREFIX}{event.model_dump_json()}\n\n"


def decode_event_stream(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """
    Parse `data:` lines back into dicts. Blank lines, partial frames and
    anything that is not a JSON object are skipped.
    """
    for raw in lines:
        line = (raw or "").strip()
        if not line.startswith(_PREFIX):
            continue
        payload = line[len(_PREFIX):].strip()
        if not payload:
            continue
        try:
            data = json.loads(payload)
        except ValueError:
            log.debug("skipping malformed event line: %r", line[:200])
            continue
        if isinstance(data, dict) and "type" in data:
            yield data

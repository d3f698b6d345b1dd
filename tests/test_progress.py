from buildingsync.schemas import CompleteEvent, ErrorEvent, ProgressCounts, ProgressEvent
from buildingsync.service_layer.progress import decode_event_stream, encode_event


def test_encode_event_is_one_sse_frame():
    frame = encode_event(ErrorEvent(message="boom"))
    assert frame.startswith("data:")
    assert frame.endswith("\n\n")
    assert frame.count("\n") == 2


def test_decode_skips_blank_partial_and_malformed_lines():
    progress = ProgressEvent(
        candidate_id=7,
        name="X2 Condos",
        status="db_linked",
        linked_listings=3,
        progress=ProgressCounts(current=1, total=2, completed=1),
    )
    stream = (
        encode_event(progress)
        + "\n"
        + 'data:{"type": "progress", "candidate_id": 8, "na\n'
        + "data:not json\n"
        + "data:[1, 2]\n"
        + "data:\n"
        + ": keep-alive comment\n"
        + encode_event(CompleteEvent(progress=ProgressCounts(current=2, total=2, completed=1, failed=1)))
    )

    events = list(decode_event_stream(stream.splitlines()))

    assert [e["type"] for e in events] == ["progress", "complete"]
    assert events[0]["candidate_id"] == 7
    assert events[0]["linked_listings"] == 3
    assert events[1]["progress"] == {"current": 2, "total": 2, "completed": 1, "failed": 1}

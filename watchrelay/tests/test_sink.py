from __future__ import annotations

import io
import json

from watchrelay.src.sink import JSONLinesSink


def test_send_writes_one_compact_line_per_message() -> None:
    stream = io.StringIO()
    sink = JSONLinesSink(stream)

    sink.send({"payload": {"type": "ADDED", "object": {}}, "topic": ""})
    sink.send({"payload": {"type": "DELETED", "object": {}}, "topic": "/api/v1/pods/a"})

    lines = stream.getvalue().splitlines()
    assert len(lines) == 2
    assert " " not in lines[0]
    assert json.loads(lines[1])["topic"] == "/api/v1/pods/a"

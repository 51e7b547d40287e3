# tests/test_envelopes_and_errors.py
from __future__ import annotations

import json

from healthcast.errors import CacheWriteConflict, InsufficientHistory, SourceUnavailable
from healthcast.schemas.common import fail_from, meta_now, ok

from _helpers import is_enveloped, unwrap


def test_ok_envelope_serializes_dates():
    from datetime import date

    resp = ok(data={"period": date(2024, 1, 1)}, meta=meta_now(entity_key="hiv", granularity="monthly", location_id=None))
    body = json.loads(resp.body)
    assert is_enveloped(body)
    assert unwrap(body) == {"period": "2024-01-01"}
    # None-valued params are dropped from meta
    assert body["meta"]["params"] == {"granularity": "monthly"}


def test_domain_errors_map_onto_error_envelope():
    resp = fail_from(InsufficientHistory(3, 12, "monthly"), 422)
    body = json.loads(resp.body)
    assert resp.status_code == 422
    assert body["ok"] is False and body["data"] is None
    assert body["error"]["code"] == "INSUFFICIENT_HISTORY"
    assert body["error"]["details"] == {"available": 3, "required": 12, "granularity": "monthly"}


def test_error_codes_and_messages():
    assert SourceUnavailable("events", "timeout").details["retryable"] is True
    conflict = CacheWriteConflict("hiv|*|monthly")
    assert conflict.code == "REGENERATION_CONFLICT"
    assert conflict.message == "A concurrent regeneration completed; re-fetch if a fresher result is needed."


def test_unknown_route_is_not_enveloped(client):
    r = client.get("/api/nope")
    assert r.status_code == 404

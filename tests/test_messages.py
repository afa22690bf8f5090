import json
from datetime import datetime, timezone

import pytest

from advocache.messages import (
    FullStateMsg,
    InvalidateMsg,
    RegisterReplicaRequest,
    ReplicaInfo,
    ReplicateDeletePrefixMsg,
    ReplicateDeleteSuffixMsg,
    ReplicateEvictMsg,
    ReplicateLockMsg,
    ReplicateMsg,
    ReplicateUnlockMsg,
    SheetStateMsg,
)


def test_replicate_msg_wire_form():
    msg = ReplicateMsg(sheet="s", key="k", value=1, jitter=True)
    assert msg.to_json() == '{"type":"replicate","sheet":"s","key":"k","value":1,"jitter":true}'


def test_replicate_msg_omits_nil_value_and_false_jitter():
    msg = ReplicateMsg(type="replicate_delete", sheet="s", key="k")
    assert msg.to_dict() == {"type": "replicate_delete", "sheet": "s", "key": "k"}


def test_replicate_msg_keeps_zero_value():
    assert ReplicateMsg(sheet="s", key="k", value=0).to_dict()["value"] == 0
    assert ReplicateMsg(sheet="s", key="k", value="").to_dict()["value"] == ""


def test_invalidate_msg_omits_empty_fields():
    assert InvalidateMsg(key="k").to_dict() == {"type": "invalidate", "key": "k"}
    assert InvalidateMsg(prefix="p").to_dict() == {"type": "invalidate", "prefix": "p"}
    assert InvalidateMsg(suffix="x").to_dict() == {"type": "invalidate", "suffix": "x"}


def test_default_types():
    assert FullStateMsg().type == "full_state"
    assert SheetStateMsg().type == "sheet_state"
    assert RegisterReplicaRequest().action == "register_replica"
    assert ReplicateDeletePrefixMsg().type == "replicate_delete_prefix"
    assert ReplicateDeleteSuffixMsg().type == "replicate_delete_suffix"
    assert ReplicateLockMsg().type == "replicate_lock"
    assert ReplicateUnlockMsg().type == "replicate_unlock"
    assert ReplicateEvictMsg().type == "replicate_evict"


def test_full_state_round_trip():
    msg = FullStateMsg(sheets={"a": {"x": 1, "y": [1, 2]}, "b": {}})
    decoded = FullStateMsg.from_dict(json.loads(msg.to_json()))
    assert decoded == msg


def test_sheet_state_empty_data_is_object():
    assert json.loads(SheetStateMsg().to_json()) == {"type": "sheet_state", "data": {}}


def test_register_request_keys():
    msg = RegisterReplicaRequest(instance_id="node-1", started_at="2024-01-01T00:00:00Z")
    assert msg.to_dict() == {
        "action": "register_replica",
        "instance_id": "node-1",
        "started_at": "2024-01-01T00:00:00Z",
    }


def test_lock_msg_round_trip():
    msg = ReplicateLockMsg(sheet="s", key="k", owner="o", expires_at="2024-01-01T00:00:00Z")
    assert ReplicateLockMsg.from_dict(msg.to_dict()) == msg


def test_from_dict_defaults_and_unknown_keys():
    msg = ReplicateEvictMsg.from_dict({"sheet": "s", "key": None, "extra": 5})
    assert msg == ReplicateEvictMsg(sheet="s", key="")


def test_from_dict_rejects_wrong_types():
    with pytest.raises(ValueError):
        ReplicateMsg.from_dict({"key": 5})
    with pytest.raises(ValueError):
        ReplicateMsg.from_dict({"jitter": "yes"})
    with pytest.raises(ValueError):
        SheetStateMsg.from_dict({"data": []})
    with pytest.raises(ValueError):
        InvalidateMsg.from_dict(["not", "an", "object"])


def test_replica_info_holds_fields():
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)
    conn = object()
    info = ReplicaInfo(conn, "node-1", started)
    assert info.conn is conn
    assert info.instance_id == "node-1"
    assert info.started_at == started
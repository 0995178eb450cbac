from bddrun.core.envelope import err, ok


def test_ok_envelope_shape():
    out = ok(command="x", data={"a": 1})
    assert out["ok"] is True
    assert out["command"] == "x"
    assert out["data"] == {"a": 1}
    assert out["limits"] == {}
    assert out["schema_version"] == "1"


def test_err_envelope_shape():
    out = err(command="x", error_type="NOT_FOUND", message="m")
    assert out["ok"] is False
    assert out["error"] == {"type": "NOT_FOUND", "message": "m", "details": {}}

import pytest

from conftest import run
from engine import Cascade, Frame, Frames, UnboundVariableError, Var, WhenPattern, unify, variables


def _records(*rows):
    cascade = Cascade("flow")
    for concept, action, inputs, outputs in rows:
        cascade.append(concept, action, inputs, outputs, depth=0)
    return cascade.records


def _join(when, records):
    frames = Frames(Frame())
    for pattern in when:
        frames = frames.match(pattern, records)
    return frames


def test_unbound_variable_binds_and_extra_fields_are_ignored():
    x = Var("x")
    frame = unify({"a": x, "b": 2}, {"a": 1, "b": 2, "c": 3}, Frame())
    assert frame == Frame({x: 1})


def test_literal_mismatch_and_missing_field_fail():
    x = Var("x")
    assert unify({"a": 1}, {"a": 2}, Frame()) is None
    assert unify({"a": x}, {"b": 1}, Frame()) is None


def test_bound_variable_must_agree():
    x = Var("x")
    frame = Frame({x: 1})
    assert unify({"a": x}, {"a": 1}, frame) is frame
    assert unify({"a": x}, {"a": 2}, frame) is None


def test_bind_never_mutates_a_frame():
    x, y = variables("x", "y")
    frame = Frame({x: 1})
    assert frame.bind(x, 2) is None
    extended = frame.bind(y, 5)
    assert dict(frame) == {x: 1}
    assert dict(extended) == {x: 1, y: 5}


def test_conflict_removes_only_the_offending_frame():
    x, v = variables("x", "v")
    records = _records(("A", "op", {"k": 1}, {"v": "one"}))
    frames = Frames(Frame({x: 1}), Frame({x: 2}), Frame({x: 1, v: "other"}))
    out = frames.match(WhenPattern("A", "op", {"k": x}, {"v": v}), records)
    assert len(out) == 1
    assert out[0][x] == 1
    assert out[0][v] == "one"
    assert out[0].records == (records[0],)


def test_operation_identifier_must_match():
    rec, = _records(("A", "op", {}, {}))
    assert WhenPattern("A", "other").match(rec, Frame()) is None
    assert WhenPattern("B", "op").match(rec, Frame()) is None
    assert WhenPattern("A", "op").match(rec, Frame()) is not None


def test_error_and_success_branches_are_exclusive():
    msg, r = variables("msg", "r")
    ok, failed = _records(("A", "op", {}, {"r": 1}), ("A", "op", {}, {"error": "boom"}))
    success = WhenPattern("A", "op", {}, {"r": r})
    any_success = WhenPattern("A", "op", {}, {})
    failure = WhenPattern("A", "op", {}, {"error": msg})
    assert success.match(ok, Frame())[r] == 1
    assert success.match(failed, Frame()) is None
    assert any_success.match(ok, Frame()) is not None
    assert any_success.match(failed, Frame()) is None
    assert failure.match(failed, Frame())[msg] == "boom"
    assert failure.match(ok, Frame()) is None


def test_two_clause_join_with_consistent_values_yields_one_frame():
    user, = variables("user")
    when = [WhenPattern("A", "op", {"user": user}), WhenPattern("B", "op", {"user": user})]
    frames = _join(when, _records(("A", "op", {"user": "u1"}, {}), ("B", "op", {"user": "u1"}, {})))
    assert len(frames) == 1
    assert frames[0][user] == "u1"


def test_two_clause_join_with_inconsistent_values_yields_nothing():
    user, = variables("user")
    when = [WhenPattern("A", "op", {"user": user}), WhenPattern("B", "op", {"user": user})]
    frames = _join(when, _records(("A", "op", {"user": "u1"}, {}), ("B", "op", {"user": "u2"}, {})))
    assert frames == []


def test_join_counts_each_consistent_assignment_once():
    user, item = variables("user", "item")
    when = [WhenPattern("A", "op", {"user": user}), WhenPattern("B", "op", {"user": user, "item": item})]
    records = _records(
        ("A", "op", {"user": "u1"}, {}),
        ("B", "op", {"user": "u1", "item": 1}, {}),
        ("B", "op", {"user": "u2", "item": 2}, {}),
        ("B", "op", {"user": "u1", "item": 3}, {}),
    )
    frames = _join(when, records)
    assert sorted(f[item] for f in frames) == [1, 3]


def test_substitute_reports_unbound_variable():
    x, y = variables("x", "y")
    frame = Frame({x: 1})
    assert frame.substitute({"a": x, "b": "lit"}) == {"a": 1, "b": "lit"}
    with pytest.raises(UnboundVariableError):
        frame.substitute({"a": y})


def test_query_join_fans_out_and_drops_failed_lookups():
    key, item, err = variables("key", "item", "err")
    table = {"a": [{"item": 1}, {"item": 2}], "b": [{"error": "nope"}], "c": [], "d": {"item": 9}}

    async def lookup(key):
        return table[key]

    frames = Frames(*(Frame({key: k}) for k in "abcd"))
    found = run(frames.query(lookup, {"key": key}, {"item": item}))
    assert [(f[key], f[item]) for f in found] == [("a", 1), ("a", 2), ("d", 9)]
    errors = run(frames.query(lookup, {"key": key}, {"error": err}))
    assert [(f[key], f[err]) for f in errors] == [("b", "nope")]
    absent = run(frames.absent(lookup, {"key": key}))
    assert [f[key] for f in absent] == ["b", "c"]


def test_unnest_fans_out_over_a_bound_collection():
    files, file = variables("files", "file")
    frames = Frames(Frame({files: ["f1", "f2", "f3"]}), Frame({files: []}))
    out = frames.unnest(files, file)
    assert [f[file] for f in out] == ["f1", "f2", "f3"]

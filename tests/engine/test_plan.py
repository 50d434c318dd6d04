"""Tests for step ordering and the DeploymentPlan state machine."""

import dataclasses

import pytest

from hostwright.engine.plan import DeploymentPlan, PlanState, topological_order
from hostwright.engine.state import ProbeTargets
from hostwright.engine.step import Outcome, Phase, Step
from hostwright.errors import DNSNotReadyError, TransportError, ValidationError


def _noop_step(step_id, phase=Phase.LAYOUT, depends_on=(), **kwargs):
    async def action(ex, state):
        pass

    return Step(
        id=step_id,
        description=step_id,
        phase=phase,
        precondition=lambda s: False,
        action=action,
        depends_on=list(depends_on),
        **kwargs,
    )


# ── topological_order ───────────────────────────────────────────────


def test_dependencies_come_first():
    steps = [
        _noop_step("service", Phase.SERVICE, ["venv"]),
        _noop_step("venv", Phase.APPLICATION, ["layout"]),
        _noop_step("layout", Phase.LAYOUT),
    ]
    assert [s.id for s in topological_order(steps)] == ["layout", "venv", "service"]


def test_ties_broken_by_phase_then_insertion_order():
    steps = [
        _noop_step("proxy", Phase.PROXY),
        _noop_step("b", Phase.LAYOUT),
        _noop_step("packages", Phase.PACKAGES),
        _noop_step("a", Phase.LAYOUT),
    ]
    assert [s.id for s in topological_order(steps)] == ["packages", "b", "a", "proxy"]


def test_cycle_rejected():
    steps = [_noop_step("a", depends_on=["b"]), _noop_step("b", depends_on=["a"])]
    with pytest.raises(ValidationError, match="cycle") as exc:
        topological_order(steps)
    assert exc.value.observed == "a, b"


def test_unknown_dependency_rejected():
    with pytest.raises(ValidationError, match="unknown step 'ghost'"):
        topological_order([_noop_step("a", depends_on=["ghost"])])


def test_duplicate_id_rejected():
    with pytest.raises(ValidationError, match="Duplicate step id 'a'"):
        topological_order([_noop_step("a"), _noop_step("a")])


# ── state machine ───────────────────────────────────────────────────


def _plan(descriptor, host, steps, locks):
    return DeploymentPlan(descriptor, host, steps, ProbeTargets(), locks=locks)


def _failing_step(step_id, phase=Phase.PROXY, **kwargs):
    async def action(ex, state):
        await ex.run("exit-nonzero")

    return Step(id=step_id, description=step_id, phase=phase, precondition=lambda s: False, action=action, **kwargs)


async def test_execute_requires_validate(descriptor, bare_host, locks):
    plan = _plan(descriptor, bare_host, [_noop_step("a")], locks)
    with pytest.raises(RuntimeError, match="expected validated"):
        await plan.execute()


async def test_validate_rejects_invalid_descriptor(descriptor, bare_host, locks):
    plan = _plan(dataclasses.replace(descriptor, app_port=0), bare_host, [_noop_step("a")], locks)
    with pytest.raises(ValidationError):
        plan.validate()
    assert plan.state == PlanState.DRAFT


async def test_success(descriptor, bare_host, locks):
    plan = _plan(descriptor, bare_host, [_noop_step("a"), _noop_step("b", depends_on=["a"])], locks)
    plan.validate()
    assert await plan.execute() == PlanState.SUCCEEDED
    assert [r.outcome for r in plan.results] == [Outcome.APPLIED, Outcome.APPLIED]


async def test_failure_undoes_reversible_steps_in_reverse(descriptor, bare_host, locks):
    undone = []

    def undo(name):
        async def _undo(ex):
            undone.append(name)

        return _undo

    steps = [
        _noop_step("packages", Phase.PACKAGES),
        _noop_step("service", Phase.SERVICE, ["packages"], undo=undo("service")),
        _noop_step("proxy", Phase.PROXY, ["service"], undo=undo("proxy")),
        _failing_step("proxy-tls", Phase.PROXY_TLS, depends_on=["proxy"], undo=undo("proxy-tls")),
        _noop_step("never", Phase.PROXY_TLS, ["proxy-tls"], undo=undo("never")),
    ]
    plan = _plan(descriptor, bare_host, steps, locks)
    plan.validate()

    assert await plan.execute() == PlanState.ROLLED_BACK
    assert undone == ["proxy-tls", "proxy", "service"]
    assert plan.left_in_place == ["packages"]
    assert plan.results[-1].outcome == Outcome.FAILED
    assert "exit-nonzero" in plan.to_dict()["error"]


async def test_undo_failure_is_fatal(descriptor, bare_host, locks):
    async def broken_undo(ex):
        await ex.run("exit-nonzero")

    steps = [
        _noop_step("service", Phase.SERVICE, undo=broken_undo),
        _failing_step("proxy", depends_on=["service"]),
    ]
    plan = _plan(descriptor, bare_host, steps, locks)
    plan.validate()

    assert await plan.execute() == PlanState.FAILED
    assert plan.error.step_id == "service"
    assert "manual cleanup" in plan.error.message


async def test_precondition_error_defers_without_rollback(descriptor, bare_host, locks):
    undone = []

    async def undo(ex):
        undone.append("service")

    async def not_ready(ex, state):
        raise DNSNotReadyError("demo.example.com does not resolve here", expected="203.0.113.10", observed="no A records")

    steps = [
        _noop_step("service", Phase.SERVICE, undo=undo),
        Step(
            id="certificate",
            description="certificate",
            phase=Phase.CERTIFICATE,
            precondition=lambda s: False,
            action=not_ready,
            depends_on=["service"],
        ),
        _noop_step("proxy-tls", Phase.PROXY_TLS, ["certificate"]),
    ]
    plan = _plan(descriptor, bare_host, steps, locks)
    plan.validate()

    assert await plan.execute() == PlanState.DEFERRED
    assert undone == []
    assert [r.step_id for r in plan.results] == ["service", "certificate"]
    assert plan.results[-1].detail.startswith("deferred: [certificate]")
    assert plan.error.step_id == "certificate"


async def test_probe_failure_rolls_back_earlier_steps(descriptor, bare_host, locks):
    undone = []

    async def undo(ex):
        undone.append("service")

    plan = _plan(descriptor, bare_host, [_noop_step("service", undo=undo), _noop_step("proxy", depends_on=["service"])], locks)
    plan.validate()

    calls = 0
    original = plan.probe

    async def flaky_probe():
        nonlocal calls
        calls += 1
        if calls == 3:  # before "proxy": service's own probe plus its postcondition probe came first
            raise TransportError("connection reset")
        return await original()

    plan.probe = flaky_probe
    plan.runner.probe = flaky_probe

    assert await plan.execute() == PlanState.ROLLED_BACK
    assert undone == ["service"]
    assert plan.results[-1].step_id == "proxy"


async def test_to_dict_is_audit_record(descriptor, bare_host, locks):
    plan = _plan(descriptor, bare_host, [_noop_step("a")], locks)
    plan.validate()
    await plan.execute()
    record = plan.to_dict()
    assert record["project"] == "demo"
    assert record["state"] == "succeeded"
    assert record["steps"] == ["a"]
    assert record["results"][0]["outcome"] == "applied"
    assert descriptor.db_password not in str(record)

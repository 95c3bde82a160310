import pytest

from extensions import (
    BefungeExtensionError,
    ExtensionAPI,
    HookRegistry,
    StepContext,
    build_default_services,
)
from interpreter import STATUS_HALTED, BefungeHookError, Interpreter


def _api(services, name="test"):
    return ExtensionAPI(services=services, ext_name=name)


def test_lifecycle_events_fire_in_order():
    services = build_default_services()
    api = _api(services)
    seen = []

    @api.on_event("program_start")
    def start(interp, grid):
        seen.append(("start", grid.width, grid.height))

    @api.on_event("on_output")
    def output(interp, text):
        seen.append(("output", text))

    @api.on_event("program_end")
    def end(interp, status):
        seen.append(("end", status))

    Interpreter(services=services).run("1.2.@")
    assert seen == [
        ("start", 5, 1),
        ("output", "1"),
        ("output", "2"),
        ("end", STATUS_HALTED),
    ]


def test_handlers_run_by_priority():
    services = build_default_services()
    api = _api(services)
    order = []
    api.on_event("program_end", lambda interp, status: order.append("low"), priority=-1)
    api.on_event("program_end", lambda interp, status: order.append("high"), priority=10)
    api.on_event("program_end", lambda interp, status: order.append("default"))
    Interpreter(services=services).run("@")
    assert order == ["high", "default", "low"]


def test_step_rule_runs_every_n_steps():
    services = build_default_services()
    api = _api(services)
    contexts = []

    @api.every_n_steps(2)
    def sample(interp, ctx):
        contexts.append(ctx)

    Interpreter(services=services).run("1111@")
    assert [ctx.step_index for ctx in contexts] == [2, 4]
    assert contexts[0] == StepContext(step_index=2, instruction="1", position=(1, 0), direction=(1, 0))


def test_unknown_event_is_rejected():
    registry = HookRegistry()
    with pytest.raises(BefungeExtensionError):
        registry.on_event("on_input", lambda *args: None, priority=0, ext_name="test")


def test_step_rule_interval_must_be_positive():
    api = _api(build_default_services())
    with pytest.raises(BefungeExtensionError):
        api.every_n_steps(0, lambda interp, ctx: None)


def test_duplicate_step_rule_name_is_rejected():
    api = _api(build_default_services())
    api.every_n_steps(1, lambda interp, ctx: None, name="sample")
    with pytest.raises(BefungeExtensionError):
        api.every_n_steps(5, lambda interp, ctx: None, name="sample")


def test_rules_due_and_handler_owners():
    services = build_default_services()
    registry = services.hook_registry
    _api(services, "tracer").every_n_steps(2, lambda interp, ctx: None, name="even")
    _api(services, "sampler").every_n_steps(3, lambda interp, ctx: None, name="third")
    _api(services, "printer").on_event("on_output", lambda interp, text: None)

    assert [name for _h, _ext, name in registry.rules_due(6)] == ["even", "third"]
    assert [ext for _h, ext, _name in registry.rules_due(4)] == ["tracer"]
    assert registry.rules_due(5) == []
    assert registry.rule_names() == ["tracer.even", "sampler.third"]
    assert [ext for _h, ext in registry.handlers("on_output")] == ["printer"]


def test_extension_name_is_required():
    with pytest.raises(BefungeExtensionError):
        ExtensionAPI(services=build_default_services(), ext_name="")


def test_failing_hook_is_reported():
    services = build_default_services()
    api = _api(services, "recorder")

    @api.on_event("on_output")
    def explode(interp, text):
        raise ValueError("boom")

    with pytest.raises(BefungeHookError) as info:
        Interpreter(services=services).run("12.@")
    assert info.value.hook == "on_output"
    assert info.value.ext_name == "recorder"
    assert info.value.rule is None
    assert info.value.step_index == 2
    assert "boom" in info.value.message
    assert "recorder" in info.value.message


def test_failing_step_rule_is_reported():
    services = build_default_services()
    api = _api(services, "divider")
    api.every_n_steps(3, lambda interp, ctx: 1 / 0, name="divide")

    with pytest.raises(BefungeHookError) as info:
        Interpreter(services=services).run("1111@")
    assert info.value.hook == "step"
    assert info.value.ext_name == "divider"
    assert info.value.rule == "divide"
    assert info.value.step_index == 3
    assert "'divide' from 'divider'" in info.value.message

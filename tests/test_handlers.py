"""Tests for bindings, the handler registry and built-in handlers."""

import pytest

from automation_engine.core.exceptions import HandlerRegistryError
from automation_engine.core.handler_registry import HandlerRegistry, build_default_registry
from automation_engine.core.templating import BindingError, resolve_bindings
from automation_engine.handlers import HandlerContext, HandlerResult, NodeHandler
from automation_engine.handlers.actions import DelayHandler, EchoHandler, LoggerHandler, TransformHandler
from automation_engine.handlers.logic import ConditionHandler, MergeHandler, RouterHandler, compare
from automation_engine.handlers.triggers import TriggerPassthroughHandler
from automation_engine.models.core import NodeKind, StepStatus


def make_context(builders, inputs=None, trigger_data=None, outputs=None, cancel=lambda: False):
    wf = builders.workflow([builders.node("trigger", "trigger:form"), builders.node("n", "action:echo")],
                           [builders.edge("trigger", "n")])
    return HandlerContext(
        run_id="run-1",
        workflow_id=wf.id,
        node=wf.get_node("n"),
        trigger=builders.payload(wf, data=trigger_data or {}),
        inputs=inputs or {},
        outputs=outputs or {},
        cancel_requested=cancel,
    )


class TestBindings:
    """Template resolution in node configuration."""

    scope = {
        "trigger": {"email": "ada@example.com", "amount": 250, "tags": ["a", "b"]},
        "input": {"status": "ok"},
        "nodes": {"fetch": {"rows": 3}},
        "run": {"run_id": "r1", "workflow_id": "wf"},
    }

    def test_whole_expression_keeps_type(self):
        resolved = resolve_bindings({"amount": "{{ trigger.amount }}", "tags": "{{ trigger.tags }}"}, self.scope)
        assert resolved == {"amount": 250, "tags": ["a", "b"]}

    def test_embedded_expression_renders_text(self):
        resolved = resolve_bindings({"message": "Hello {{ trigger.email }} ({{ nodes.fetch.rows }})"}, self.scope)
        assert resolved["message"] == "Hello ada@example.com (3)"

    def test_nested_structures(self):
        config = {"mapping": {"who": "{{ trigger.email }}", "list": ["{{ input.status }}", 1]}}
        assert resolve_bindings(config, self.scope) == {"mapping": {"who": "ada@example.com", "list": ["ok", 1]}}

    def test_plain_values_untouched(self):
        config = {"seconds": 2, "flag": True, "text": "no templates here"}
        assert resolve_bindings(config, self.scope) == config

    def test_undefined_reference_fails(self):
        with pytest.raises(BindingError):
            resolve_bindings({"x": "{{ trigger.missing }}"}, self.scope)
        with pytest.raises(BindingError):
            resolve_bindings({"x": "value: {{ nodes.unknown.rows }}"}, self.scope)

    def test_expression_errors_become_binding_errors(self):
        with pytest.raises(BindingError, match="TypeError"):
            resolve_bindings({"x": "{{ trigger.email + 1 }}"}, self.scope)
        with pytest.raises(BindingError, match="ZeroDivisionError"):
            resolve_bindings({"x": "total: {{ 1 / 0 }}"}, self.scope)

    def test_sandbox_blocks_attribute_escapes(self):
        with pytest.raises(BindingError):
            resolve_bindings({"x": "{{ trigger.__class__.__mro__ }}"}, self.scope)


class TestHandlerRegistry:
    def test_default_registry_covers_every_kind(self):
        registry = build_default_registry()
        assert registry.frozen
        assert registry.missing_kinds() == []
        assert len(registry) == len(NodeKind)
        assert isinstance(registry.resolve(NodeKind.ACTION_ECHO), EchoHandler)

    def test_frozen_registry_rejects_registration(self):
        registry = build_default_registry()
        with pytest.raises(HandlerRegistryError):
            registry.register(EchoHandler())

    def test_duplicate_kind_rejected(self):
        registry = HandlerRegistry()
        registry.register(EchoHandler())
        with pytest.raises(HandlerRegistryError):
            registry.register(EchoHandler())

    def test_freeze_requires_full_coverage(self):
        registry = HandlerRegistry()
        registry.register(EchoHandler())
        with pytest.raises(HandlerRegistryError):
            registry.freeze()

    def test_unknown_kind_rejected(self):
        registry = build_default_registry()
        with pytest.raises(HandlerRegistryError):
            registry.resolve("action:shell")

    def test_handler_without_kind_rejected(self):
        class Kindless(NodeHandler):
            def execute(self, config, context):
                return HandlerResult.success()

        with pytest.raises(HandlerRegistryError):
            HandlerRegistry().register(Kindless())


class TestActionHandlers:
    def test_echo_returns_value_or_input(self, builders):
        context = make_context(builders, inputs={"trigger": {"a": 1}})
        assert EchoHandler().execute({"value": 5}, context).output == 5
        assert EchoHandler().execute({}, context).output == {"a": 1}

    def test_logger(self, builders):
        context = make_context(builders)
        result = LoggerHandler().execute({"message": "hi", "level": "warning"}, context)
        assert result.status == StepStatus.SUCCESS
        assert result.output == {"message": "hi", "level": "warning"}

        assert LoggerHandler().execute({"level": "loud"}, context).status == StepStatus.ERROR

    def test_transform_requires_mapping(self, builders):
        context = make_context(builders)
        assert TransformHandler().execute({"mapping": {"x": 1}}, context).output == {"x": 1}
        assert TransformHandler().execute({}, context).status == StepStatus.ERROR

    def test_delay(self, builders):
        context = make_context(builders)
        assert DelayHandler().execute({"seconds": 0.01}, context).output == {"delayed": 0.01}
        assert DelayHandler().execute({"seconds": -1}, context).status == StepStatus.ERROR
        assert DelayHandler().execute({"seconds": "soon"}, context).status == StepStatus.ERROR

    def test_delay_stops_on_cancel(self, builders):
        context = make_context(builders, cancel=lambda: True)
        result = DelayHandler().execute({"seconds": 30}, context)
        assert result.output["interrupted"] is True

    def test_trigger_passthrough_outputs_trigger_data(self, builders):
        context = make_context(builders, trigger_data={"name": "Ada"})
        handler = TriggerPassthroughHandler(NodeKind.TRIGGER_FORM)
        assert handler.execute({}, context).output == {"name": "Ada"}
        assert handler.resolve_bindings is False

        with pytest.raises(ValueError):
            TriggerPassthroughHandler(NodeKind.ACTION_ECHO)


class TestLogicHandlers:
    @pytest.mark.parametrize("left,operator,right,expected", [
        (200, "equals", "200", True),
        ("a", "notEquals", "b", True),
        ("hello world", "contains", "world", True),
        (["x", "y"], "contains", "y", True),
        (None, "contains", "y", False),
        (5, "greaterThan", 3, True),
        ("2.5", "lessThan", 3, True),
        ("", "exists", None, False),
        (0, "exists", None, True),
    ])
    def test_compare(self, left, operator, right, expected):
        assert compare(left, operator, right) is expected

    def test_compare_rejects_unknown_operator(self):
        with pytest.raises(ValueError):
            compare(1, "matches", 1)

    def test_condition_selects_branch(self, builders):
        context = make_context(builders)
        result = ConditionHandler().execute({"left": 10, "operator": "greaterThan", "right": 5}, context)
        assert result.selected_outputs == ["true"]
        result = ConditionHandler().execute({"left": 1, "operator": "greaterThan", "right": 5}, context)
        assert result.selected_outputs == ["false"]

    def test_condition_bad_operands_fail_the_node(self, builders):
        context = make_context(builders)
        result = ConditionHandler().execute({"left": "abc", "operator": "greaterThan", "right": 5}, context)
        assert result.status == StepStatus.ERROR

    def test_router_first_match_wins(self, builders):
        context = make_context(builders)
        config = {"rules": [
            {"id": "vip", "conditions": [{"variable": 900, "operator": "greaterThan", "value": 500}]},
            {"id": "big", "conditions": [{"variable": 900, "operator": "greaterThan", "value": 100}]},
        ]}
        assert RouterHandler().execute(config, context).selected_outputs == ["vip"]

    def test_router_or_logic_and_fallback(self, builders):
        context = make_context(builders)
        config = {"rules": [
            {"id": "either", "logic": "or", "conditions": [
                {"variable": "a", "operator": "equals", "value": "b"},
                {"variable": "c", "operator": "equals", "value": "c"},
            ]},
        ]}
        assert RouterHandler().execute(config, context).selected_outputs == ["either"]

        config["rules"][0]["conditions"][1]["value"] = "d"
        assert RouterHandler().execute(config, context).selected_outputs == ["fallback"]

    def test_router_rule_without_id_fails(self, builders):
        context = make_context(builders)
        result = RouterHandler().execute({"rules": [{"conditions": []}]}, context)
        assert result.status == StepStatus.ERROR

    def test_merge_collects_inputs(self, builders):
        context = make_context(builders, inputs={"a": 1, "b": 2})
        assert MergeHandler().execute({}, context).output == {"a": 1, "b": 2}
        assert MergeHandler.error_tolerant is True

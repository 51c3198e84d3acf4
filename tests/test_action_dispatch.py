"""Tests for the action registry, metadata extraction and dispatcher."""

import asyncio
import json
import threading

import pytest

from umlflow.actions.builtin_handlers import DEFAULT_HANDLERS, log_message, set_variables
from umlflow.core.action_dispatcher import ActionDispatcher, resolve_templates
from umlflow.core.action_registry import WorkflowActionHandler
from umlflow.core.exceptions import ActionDispatchError, ActionRegistryError
from umlflow.core.metadata import extract_action_descriptor, split_note_metadata, try_parse_json_object
from umlflow.models.core import DispatchStatus, WorkflowDefinition, WorkflowNode


def action_node(action, params=None, node_id="step", note=None):
    metadata = {"action": action}
    if params is not None:
        metadata["params"] = params
    return WorkflowNode(id=node_id, label=node_id.title(), json_metadata=json.dumps(metadata), note_markdown=note)


def definition_for(*nodes):
    return WorkflowDefinition(id="wf", name="Test", nodes=list(nodes))


class TestActionHandlerRegistry:
    """Registration and lookup of handlers."""

    def test_register_function(self, action_registry):
        def greet(context, params):
            """Say hello."""
            return {"greeting": "hi"}

        handler = action_registry.register_handler("Greet", greet)

        assert action_registry.get_handler("greet") is handler
        assert action_registry.handler_exists("GREET")
        assert action_registry.list_handlers() == {"Greet": "Say hello."}

    def test_register_handler_instance(self, action_registry):
        class Upper(WorkflowActionHandler):
            description = "Upper-case a value"

            def handle(self, context, params):
                return {"value": params.get("value", "").upper()}

        handler = Upper()
        action_registry.register_handler("upper", handler)

        assert handler.name == "upper"
        assert action_registry.get_handler("Upper") is handler
        assert not handler.is_async

    def test_duplicate_name_raises(self, action_registry):
        action_registry.register_handler("greet", lambda params: None)
        with pytest.raises(ActionRegistryError) as exc_info:
            action_registry.register_handler("GREET", lambda params: None)
        assert exc_info.value.error_code == "ActionRegistryError"
        assert exc_info.value.context["operation"] == "register"

    def test_duplicate_name_with_replace(self, action_registry):
        action_registry.register_handler("greet", lambda params: {"v": "1"})
        replacement = action_registry.register_handler("greet", lambda params: {"v": "2"}, replace=True)
        assert action_registry.get_handler("greet") is replacement

    @pytest.mark.parametrize("name", ["", "   "])
    def test_empty_name_raises(self, action_registry, name):
        with pytest.raises(ActionRegistryError):
            action_registry.register_handler(name, lambda params: None)

    def test_non_callable_raises(self, action_registry):
        with pytest.raises(ActionRegistryError):
            action_registry.register_handler("broken", "not a function")

    def test_unregister(self, action_registry):
        action_registry.register_handler("greet", lambda params: None)
        assert action_registry.unregister_handler("Greet") is True
        assert action_registry.unregister_handler("greet") is False
        assert action_registry.get_handler("greet") is None

    def test_unknown_and_blank_lookups(self, action_registry):
        assert action_registry.get_handler("missing") is None
        assert action_registry.get_handler("") is None
        assert action_registry.get_handler(None) is None


class TestMetadata:
    """Action metadata embedded in nodes."""

    def test_json_object_parsing(self):
        assert try_parse_json_object('{"a": 1}') == {"a": 1}
        assert try_parse_json_object("[1, 2]") is None
        assert try_parse_json_object("{not json") is None
        assert try_parse_json_object("plain text") is None
        assert try_parse_json_object(None) is None

    def test_split_note_metadata(self):
        assert split_note_metadata('{"a":1}|text') == ('{"a":1}', "text")
        assert split_note_metadata("a|b") == (None, "a|b")
        assert split_note_metadata("no separator") == (None, "no separator")

    def test_descriptor_from_json_metadata(self):
        node = action_node("FetchUser", {"id": "{{userId}}", "retries": 3, "flags": {"fast": True}})
        descriptor = extract_action_descriptor(node)

        assert descriptor.action == "FetchUser"
        assert descriptor.params == {"id": "{{userId}}", "retries": "3", "flags": '{"fast": true}'}

    def test_json_metadata_wins_over_note(self):
        node = WorkflowNode(
            id="n",
            label="N",
            json_metadata='{"action":"FromMetadata"}',
            note_markdown='{"action":"FromNote"}',
        )
        assert extract_action_descriptor(node).action == "FromMetadata"

    def test_note_is_used_without_metadata(self):
        node = WorkflowNode(id="n", label="N", note_markdown='{"action":"FromNote","params":{"a":"b"}}')
        descriptor = extract_action_descriptor(node)
        assert descriptor.action == "FromNote"
        assert descriptor.params == {"a": "b"}

    def test_metadata_without_action_falls_back_to_note(self):
        node = WorkflowNode(id="n", label="N", json_metadata='{"color":"red"}', note_markdown='{"action":"Paint"}')
        assert extract_action_descriptor(node).action == "Paint"

    @pytest.mark.parametrize("metadata", [None, '{"action": ""}', '{"action": 5}', '{"params": {}}'])
    def test_nodes_without_action(self, metadata):
        node = WorkflowNode(id="n", label="N", json_metadata=metadata)
        assert extract_action_descriptor(node) is None
        assert extract_action_descriptor(None) is None


class TestTemplates:
    """Template substitution from instance variables."""

    def test_substitution(self):
        resolved = resolve_templates(
            {"greeting": "Hello {{ name }}, you are {{AGE}}", "plain": "as is"},
            {"Name": "Ada", "age": "36"},
        )
        assert resolved == {"greeting": "Hello Ada, you are 36", "plain": "as is"}

    def test_missing_variable_becomes_empty(self):
        assert resolve_templates({"id": "user-{{userId}}"}, {}) == {"id": "user-"}
        assert resolve_templates({"id": "{{userId}}"}, None) == {"id": ""}

    def test_dotted_names(self):
        assert resolve_templates({"v": "{{user.name}}"}, {"user.name": "Ada"}) == {"v": "Ada"}


class TestActionDispatcher:
    """Dispatching node actions to handlers."""

    @pytest.mark.asyncio
    async def test_template_params_and_updates(self, dispatcher, action_registry, instance_manager):
        """Variables feed handler parameters and handler results become variables."""
        received = {}

        def fetch_user(context, params):
            received.update(params)
            received["instance"] = context.instance_id
            return {"userName": "Ada", "visits": 3}

        action_registry.register_handler("FetchUser", fetch_user)
        instance_manager.set_variable("i1", "userId", "42")
        node = action_node("FetchUser", {"id": "{{userId}}"})

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.COMPLETED
        assert result.success
        assert received == {"id": "42", "instance": "i1"}
        assert result.parameters == {"id": "42"}
        assert result.updates == {"userName": "Ada", "visits": "3"}
        assert instance_manager.get_variable("i1", "username") == "Ada"
        assert instance_manager.get_variable("i1", "visits") == "3"

    @pytest.mark.asyncio
    async def test_node_without_action(self, dispatcher, instance_manager):
        node = WorkflowNode(id="plain", label="Plain")
        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.NO_ACTION
        assert instance_manager.get_variables("i1") == {}

    @pytest.mark.asyncio
    async def test_unknown_action(self, dispatcher, instance_manager):
        node = action_node("Missing", {"a": "b"})
        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.UNKNOWN_ACTION
        assert result.action_name == "Missing"
        assert "Missing" in result.error
        assert instance_manager.get_variables("i1") == {}

    @pytest.mark.asyncio
    async def test_handler_exception_leaves_variables_untouched(self, dispatcher, action_registry, instance_manager):
        def explode(params):
            raise RuntimeError("boom")

        action_registry.register_handler("Explode", explode)
        instance_manager.set_variable("i1", "before", "1")
        node = action_node("Explode")

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.FAILED
        assert result.error == "boom"
        assert not result.success
        assert instance_manager.get_variables("i1") == {"before": "1"}

    @pytest.mark.asyncio
    async def test_non_mapping_result_fails(self, dispatcher, action_registry, instance_manager):
        action_registry.register_handler("Listy", lambda params: ["not", "a", "mapping"])
        node = action_node("Listy")

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.FAILED
        assert instance_manager.get_variables("i1") == {}

    @pytest.mark.asyncio
    async def test_none_result_completes_without_updates(self, dispatcher, action_registry):
        action_registry.register_handler("Noop", lambda params: None)
        node = action_node("Noop")

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.COMPLETED
        assert result.updates == {}

    @pytest.mark.asyncio
    async def test_async_handler(self, dispatcher, action_registry, instance_manager):
        async def lookup(context, params):
            await asyncio.sleep(0)
            return {"city": params["city"].upper()}

        action_registry.register_handler("Lookup", lookup)
        node = action_node("Lookup", {"city": "oslo"})

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.COMPLETED
        assert instance_manager.get_variable("i1", "city") == "OSLO"

    @pytest.mark.asyncio
    async def test_sync_handler_runs_off_the_event_loop(self, dispatcher, action_registry):
        threads = []
        action_registry.register_handler("Where", lambda params: threads.append(threading.current_thread().name))
        node = action_node("Where")

        await dispatcher.dispatch("i1", node, definition_for(node))

        assert threads and threads[0].startswith("umlflow-action")
        assert threads[0] != threading.current_thread().name

    @pytest.mark.asyncio
    async def test_timeout(self, action_registry, instance_manager):
        async def slow(params):
            await asyncio.sleep(5)
            return {"late": "yes"}

        action_registry.register_handler("Slow", slow)
        dispatcher = ActionDispatcher(action_registry, instance_manager, handler_timeout=0.05, max_workers=1)
        node = action_node("Slow")
        try:
            result = await dispatcher.dispatch("i1", node, definition_for(node))
        finally:
            dispatcher.shutdown(wait=False)

        assert result.status == DispatchStatus.TIMED_OUT
        assert instance_manager.get_variables("i1") == {}

    @pytest.mark.asyncio
    async def test_cancel_event_abandons_handler(self, dispatcher, action_registry, instance_manager):
        async def slow(params):
            await asyncio.sleep(5)
            return {"late": "yes"}

        action_registry.register_handler("Slow", slow)
        node = action_node("Slow")
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel_event.set)

        result = await dispatcher.dispatch("i1", node, definition_for(node), cancel_event=cancel_event)

        assert result.status == DispatchStatus.CANCELLED
        assert instance_manager.get_variables("i1") == {}

    @pytest.mark.asyncio
    async def test_cancel_event_already_set(self, dispatcher, action_registry):
        calls = []
        action_registry.register_handler("Record", lambda params: calls.append(params))
        node = action_node("Record")
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await dispatcher.dispatch("i1", node, definition_for(node), cancel_event=cancel_event)

        assert result.status == DispatchStatus.CANCELLED
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_event_not_set_completes(self, dispatcher, action_registry):
        action_registry.register_handler("Quick", lambda params: {"done": "yes"})
        node = action_node("Quick")

        result = await dispatcher.dispatch("i1", node, definition_for(node), cancel_event=asyncio.Event())

        assert result.status == DispatchStatus.COMPLETED
        assert result.updates == {"done": "yes"}

    @pytest.mark.asyncio
    async def test_dispatch_after_shutdown_raises(self, action_registry, instance_manager):
        dispatcher = ActionDispatcher(action_registry, instance_manager)
        dispatcher.shutdown()
        node = action_node("Anything")

        with pytest.raises(ActionDispatchError):
            await dispatcher.dispatch("i1", node, definition_for(node))


class TestBuiltinHandlers:
    """Handlers registered by default."""

    def test_default_handler_names(self):
        assert [name for name, _, _ in DEFAULT_HANDLERS] == ["set_variables", "log_message"]

    @pytest.mark.asyncio
    async def test_set_variables(self, dispatcher, action_registry, instance_manager):
        action_registry.register_handler("set_variables", set_variables)
        instance_manager.set_variable("i1", "first", "Ada")
        node = action_node("set_variables", {"greeting": "Hi {{first}}", "step": "2"})

        result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.COMPLETED
        assert instance_manager.get_variables("i1") == {"first": "Ada", "greeting": "Hi Ada", "step": "2"}

    @pytest.mark.asyncio
    async def test_log_message(self, dispatcher, action_registry, instance_manager, caplog):
        action_registry.register_handler("log_message", log_message)
        node = action_node("log_message", {"message": "checkpoint reached", "level": "warning"})

        with caplog.at_level("WARNING", logger="umlflow.actions"):
            result = await dispatcher.dispatch("i1", node, definition_for(node))

        assert result.status == DispatchStatus.COMPLETED
        assert instance_manager.get_variable("i1", "last_message") == "checkpoint reached"
        assert any("checkpoint reached" in record.getMessage() for record in caplog.records)

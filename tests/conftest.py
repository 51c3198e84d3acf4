"""Pytest configuration and fixtures."""

import pytest

from umlflow.config import get_testing_config
from umlflow.core.action_dispatcher import ActionDispatcher
from umlflow.core.action_registry import ActionHandlerRegistry
from umlflow.core.instance_manager import InMemoryWorkflowInstanceManager
from umlflow.core.workflow_service import WorkflowService
from umlflow.storage.definition_store import InMemoryWorkflowDefinitionStore


BRANCHING_DIAGRAM = """@startuml
start
:Ask for name;
if (Has account?) then (yes)
  :Log in;
else (no)
  :Sign up;
endif
:Welcome;
stop
@enduml
"""

LOOP_DIAGRAM = """@startuml
start
repeat
  :Read item;
  :Process item;
repeat while (more items?)
:Done;
stop
@enduml
"""


@pytest.fixture
def testing_config():
    """Configuration tuned for tests."""
    return get_testing_config()


@pytest.fixture
def instance_manager():
    """Fresh in-memory instance manager."""
    return InMemoryWorkflowInstanceManager()


@pytest.fixture
def action_registry():
    """Empty action handler registry."""
    return ActionHandlerRegistry()


@pytest.fixture
def dispatcher(action_registry, instance_manager):
    """Dispatcher with a short handler timeout."""
    dispatcher = ActionDispatcher(
        registry=action_registry,
        instance_manager=instance_manager,
        handler_timeout=2.0,
        max_workers=2
    )
    yield dispatcher
    dispatcher.shutdown(wait=False)


@pytest.fixture
def definition_store():
    """Empty in-memory definition store."""
    return InMemoryWorkflowDefinitionStore()


@pytest.fixture
def workflow_service(definition_store, instance_manager, dispatcher):
    """Workflow service wired to in-memory components."""
    return WorkflowService(
        definition_store=definition_store,
        instance_manager=instance_manager,
        dispatcher=dispatcher
    )


@pytest.fixture
def branching_diagram():
    return BRANCHING_DIAGRAM


@pytest.fixture
def loop_diagram():
    return LOOP_DIAGRAM

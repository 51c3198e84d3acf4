"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from umlflow.config import AppConfig, LogLevel
from umlflow.core.exceptions import (
    ActionDispatchError,
    ConfigurationError,
    DiagramParseError,
    InstanceStateError,
    WorkflowNotFoundError,
)
from umlflow.core.middleware import get_status_code_for_error
from umlflow.factory import create_app

from .conftest import BRANCHING_DIAGRAM, LOOP_DIAGRAM


@pytest.fixture
def api_config():
    """Configuration for API tests."""
    return AppConfig(
        app_name="API Test Engine",
        debug=True,
        log_level=LogLevel.WARNING,
        action_handler_timeout=5.0,
        action_executor_workers=2
    )


@pytest.fixture
def app(api_config):
    return create_app(api_config)


@pytest.fixture
def client(app):
    """Client running the application lifespan."""
    with TestClient(app) as test_client:
        yield test_client


def import_diagram(client, text=BRANCHING_DIAGRAM, workflow_id="signup", **extra):
    response = client.post(
        "/api/v1/workflows/import",
        json={"plantuml": text, "workflow_id": workflow_id, **extra}
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    """Root and health endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "API Test Engine is running", "version": "1.0.0"}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "api-test-engine"

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_request_id_is_generated(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Request-ID")


class TestImportEndpoint:
    """POST /api/v1/workflows/import"""

    def test_import(self, client):
        body = import_diagram(client, name="Sign-up flow")

        assert body["workflow_id"] == "signup"
        assert body["name"] == "Sign-up flow"
        assert body["node_count"] == 8
        assert body["transition_count"] == 8
        assert body["current_node_id"] == "Ask for name"
        assert body["warnings"] == []

    def test_import_without_id(self, client):
        body = import_diagram(client, LOOP_DIAGRAM, workflow_id=None)
        assert body["workflow_id"]
        assert body["name"] == "ImportedWorkflow"
        assert client.get("/api/v1/workflows").json() == [body["workflow_id"]]

    def test_import_reports_warnings(self, client):
        body = import_diagram(client, "start\nfork\n:A;", workflow_id="forked")
        assert any("fork" in warning for warning in body["warnings"])

    def test_empty_diagram_is_rejected(self, client):
        response = client.post("/api/v1/workflows/import", json={"plantuml": "   "})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "DiagramParseError"

    def test_diagram_without_nodes_is_rejected(self, client):
        response = client.post(
            "/api/v1/workflows/import",
            json={"plantuml": "@startuml\nskinparam shadowing false\n@enduml"}
        )
        assert response.status_code == 400

    def test_missing_body_field(self, client):
        response = client.post("/api/v1/workflows/import", json={"workflow_id": "x"})
        assert response.status_code == 422


class TestWorkflowEndpoints:
    """Definition, state, advance and restart endpoints."""

    def test_get_definition(self, client):
        import_diagram(client)
        response = client.get("/api/v1/workflows/signup")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "signup"
        assert [node["id"] for node in body["nodes"]][:2] == ["Start", "Ask for name"]
        assert body["start_points"] == [{"node_id": "Start"}]

    def test_unknown_workflow(self, client):
        for response in (
            client.get("/api/v1/workflows/missing"),
            client.get("/api/v1/workflows/missing/state"),
            client.post("/api/v1/workflows/missing/advance", json={}),
            client.post("/api/v1/workflows/missing/restart"),
        ):
            assert response.status_code == 404
            assert response.json()["detail"]["error"] == "WorkflowNotFoundError"

    def test_state(self, client):
        import_diagram(client)
        response = client.get("/api/v1/workflows/signup/state")

        assert response.status_code == 200
        body = response.json()
        assert body["instance_id"] == "signup"
        assert body["current_node_id"] == "Ask for name"
        assert body["state"] == {
            "is_choice": False,
            "text": "Ask for name",
            "choices": [],
            "node_label": "Ask for name",
        }

    def test_advance_through_choice(self, client):
        import_diagram(client)

        response = client.post("/api/v1/workflows/signup/advance", json={})
        body = response.json()
        assert response.status_code == 200
        assert body["advanced"] is True
        assert body["state"]["is_choice"] is True
        assert [c["display_text"] for c in body["state"]["choices"]] == ["Log in", "Sign up"]

        body = client.post("/api/v1/workflows/signup/advance", json={"choice": 1}).json()
        assert body["advanced"] is True
        assert body["current_node_id"] == "Sign up"

    def test_advance_by_label_and_numeric_string(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={})

        body = client.post("/api/v1/workflows/signup/advance", json={"choice": "Log in"}).json()
        assert body["current_node_id"] == "Log in"

        client.post("/api/v1/workflows/signup/restart")
        client.post("/api/v1/workflows/signup/advance", json={})
        body = client.post("/api/v1/workflows/signup/advance", json={"choice": "1"}).json()
        assert body["current_node_id"] == "Sign up"

    def test_unmatched_choice(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={})

        response = client.post("/api/v1/workflows/signup/advance", json={"choice": "Nope"})

        assert response.status_code == 200
        assert response.json()["advanced"] is False
        assert response.json()["state"]["is_choice"] is True

    def test_named_instances(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={"instance_id": "alice"})

        alice = client.get("/api/v1/workflows/signup/state", params={"instance_id": "alice"}).json()
        default = client.get("/api/v1/workflows/signup/state").json()

        assert alice["instance_id"] == "alice"
        assert alice["state"]["is_choice"] is True
        assert default["current_node_id"] == "Ask for name"

    def test_instance_of_other_workflow_conflicts(self, client):
        import_diagram(client)
        import_diagram(client, LOOP_DIAGRAM, workflow_id="loop")

        response = client.post("/api/v1/workflows/loop/advance", json={"instance_id": "signup"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InstanceStateError"

    def test_restart(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={})
        client.post("/api/v1/workflows/signup/advance", json={"choice": 0})

        response = client.post("/api/v1/workflows/signup/restart")

        assert response.status_code == 200
        assert response.json()["current_node_id"] == "Ask for name"

    def test_restart_named_instance(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={"instance_id": "bob"})

        response = client.post("/api/v1/workflows/signup/restart", json={"instance_id": "bob"})

        assert response.json()["instance_id"] == "bob"
        assert response.json()["current_node_id"] == "Ask for name"


    def test_remove_instance(self, client):
        import_diagram(client)
        client.post("/api/v1/workflows/signup/advance", json={"instance_id": "carol"})

        response = client.delete("/api/v1/workflows/signup/instances/carol")
        assert response.status_code == 204

        response = client.delete("/api/v1/workflows/signup/instances/carol")
        assert response.status_code == 404

    def test_remove_instance_of_other_workflow_conflicts(self, client):
        import_diagram(client)
        import_diagram(client, LOOP_DIAGRAM, workflow_id="loop")

        response = client.delete("/api/v1/workflows/loop/instances/signup")
        assert response.status_code == 409


class TestActionEndpoints:
    """Actions exposed through the API."""

    def test_default_actions_are_listed(self, client):
        response = client.get("/api/v1/actions")

        assert response.status_code == 200
        assert set(response.json()) == {"set_variables", "log_message"}

    def test_import_runs_start_action(self, client, app):
        text = """start
:Remember;
note right: {"action":"set_variables","params":{"plan":"basic"}}|Saving your plan
:Confirm;
stop"""
        body = import_diagram(client, text, workflow_id="plans")

        assert body["current_node_id"] == "Confirm"
        components = app.state.components
        assert components.instance_manager.get_variable("plans", "plan") == "basic"

    def test_advance_reports_dispatch(self, client, app):
        app.state.components.action_registry.register_handler(
            "Charge", lambda params: {"charged": params["amount"]}
        )
        text = """start
:Review;
:Pay;
note right: {"action":"Charge","params":{"amount":"10"}}
:Receipt;"""
        import_diagram(client, text, workflow_id="checkout")

        body = client.post("/api/v1/workflows/checkout/advance", json={}).json()

        assert body["current_node_id"] == "Receipt"
        assert body["last_dispatch"]["status"] == "completed"
        assert body["last_dispatch"]["updates"] == {"charged": "10"}

    def test_status(self, client):
        import_diagram(client)
        body = client.get("/api/v1/status").json()

        assert body["workflows"] == 1
        assert body["instances"] == 1
        assert body["actions"] == 2


class TestErrorMapping:
    """Engine errors mapped onto HTTP status codes."""

    @pytest.mark.parametrize("error,expected", [
        (DiagramParseError("empty"), 400),
        (WorkflowNotFoundError("missing", workflow_id="wf"), 404),
        (InstanceStateError("bound elsewhere", instance_id="i"), 409),
        (ActionDispatchError("boom", action_name="Charge"), 500),
        (ConfigurationError("bad", config_key="UMLFLOW_PORT"), 500),
    ])
    def test_status_codes(self, error, expected):
        assert get_status_code_for_error(error) == expected

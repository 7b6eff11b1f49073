"""Tests for the container task orchestrator.

Every exit path must clean up a created container exactly once and report
exactly one call/response pair into the outer transcript.
"""

from __future__ import annotations

import pytest

from conftest import call_part, response_content
from taskpilot.core.actions import RUN_CONTAINER_TASK, ActionContext
from taskpilot.core.generation import ModelTier, no_image_generation
from taskpilot.core.interaction import ConfirmationResult
from taskpilot.core.models import FunctionCall
from taskpilot.sandbox.engine import ContainerCreateError, ExecResult, ImagePullError, SandboxError
from taskpilot.task.orchestrator import (
    END_AFTER_TASK_OPTION,
    PROPOSAL_OPTION,
    ContainerTaskOrchestrator,
)

PROPOSAL = {
    "image": "alpine:latest",
    "taskDescription": 'Run echo "hello world"',
    "workingDir": "/workspace",
}

RUN_ECHO = {"shell": "/bin/sh", "command": 'echo "hello world"', "truncMode": "end", "timeout": "30sec"}


@pytest.fixture
def orchestrator(engine, config, secrets, knowledge) -> ContainerTaskOrchestrator:
    return ContainerTaskOrchestrator(engine=engine, config=config, secrets=secrets, knowledge=knowledge)


@pytest.fixture
def action_context(generator, cancel_token, bus, interaction):
    """Factory for the runContainerTask ActionContext."""

    def factory(proposal: dict | None = PROPOSAL, **options) -> ActionContext:
        if proposal is not None:
            options[PROPOSAL_OPTION] = proposal
        return ActionContext(
            action_call=FunctionCall(
                name="selectAction", id="action-1", args={"actionType": RUN_CONTAINER_TASK}
            ),
            transcript=[],
            options=options,
            generate_content=generator,
            generate_image=no_image_generation,
            wait_if_paused=lambda: None,
            cancel_token=cancel_token,
            bus=bus,
            interaction=interaction,
        )

    return factory


def assert_cleaned_up_once(engine) -> None:
    assert engine.count("stop") == 1
    assert engine.count("remove") == 1


# =============================================================================
# Happy Path
# =============================================================================


class TestSuccessfulRun:
    def test_echo_task_succeeds(self, orchestrator, action_context, engine, generator):
        engine.outputs['echo "hello world"'] = ExecResult(exit_code=0, output="hello world\n")
        generator.push(
            call_part("runCommand", **RUN_ECHO),
            call_part("completeTask", summary="Printed hello world"),
        )

        result = orchestrator(action_context())

        content = response_content(result.items)
        assert content.startswith("Task finished with status: Success.")
        assert "**Summary:**\nPrinted hello world" in content
        assert "**Wrap-up:**\nAll done." in content
        assert len(result.items) == 2
        assert result.items[0].function_calls[0].name == RUN_CONTAINER_TASK
        assert result.step_result["status"] == "Success"
        assert not result.break_loop
        assert_cleaned_up_once(engine)

    def test_command_output_reaches_task_transcript(self, orchestrator, action_context, engine, generator):
        engine.outputs['echo "hello world"'] = ExecResult(exit_code=0, output="hello world\n")
        generator.push(
            call_part("runCommand", **RUN_ECHO),
            call_part("completeTask", summary="Printed hello world"),
        )

        orchestrator(action_context())

        # Last command request is the one answered with completeTask
        transcript = [t for t, config, _ in generator.requests if not config.expected_response.text][-1]
        responses = [r for turn in transcript for r in turn.function_responses if r.name == "runCommand"]
        assert len(responses) == 1
        assert "hello world" in responses[0].content

    def test_proposal_from_generation(self, orchestrator, action_context, engine, generator):
        generator.push(
            call_part(RUN_CONTAINER_TASK, call_id="task-1", **PROPOSAL),
            call_part("completeTask", summary="ok"),
        )

        result = orchestrator(action_context(proposal=None))

        proposal_config = generator.configs[0]
        assert proposal_config.required_function_name == RUN_CONTAINER_TASK
        assert proposal_config.model_tier == ModelTier.CHEAP
        assert result.items[0].function_calls[0].id == "task-1"
        assert engine.calls[0] == ("pull", ("alpine:latest",))

    def test_end_after_task_option(self, orchestrator, action_context, generator):
        generator.push(call_part("completeTask", summary="ok"))
        result = orchestrator(action_context(**{END_AFTER_TASK_OPTION: True}))
        assert result.break_loop

    def test_report_is_redacted(self, orchestrator, action_context, generator, secrets):
        secrets.register("tok-abc-123")
        generator.push(call_part("completeTask", summary="Logged in with tok-abc-123"))

        result = orchestrator(action_context())

        assert "tok-abc-123" not in response_content(result.items)


# =============================================================================
# Failure Paths
# =============================================================================


class TestFailurePaths:
    def test_fail_task(self, orchestrator, action_context, engine, generator):
        generator.push(call_part("failTask", reason="Image lacks a compiler"))

        result = orchestrator(action_context())

        content = response_content(result.items)
        assert content.startswith("Task finished with status: Failed.")
        assert "Image lacks a compiler" in content
        assert engine.count("exec") == 0
        assert_cleaned_up_once(engine)

    def test_command_cap_cleans_up_once(self, orchestrator, action_context, engine, generator, config):
        config.max_commands = 3
        generator.push(*[call_part("runCommand", call_id=f"r{i}", **RUN_ECHO) for i in range(3)])

        result = orchestrator(action_context())

        content = response_content(result.items)
        assert content.startswith("Task finished with status: Failed.")
        assert "reached maximum command limit (3)" in content
        assert engine.count("exec") == 3
        assert_cleaned_up_once(engine)

    def test_pull_failure_never_creates(self, orchestrator, action_context, engine):
        engine.pull_error = ImagePullError("manifest unknown")

        result = orchestrator(action_context())

        assert "Failed to pull Docker image: manifest unknown" in response_content(result.items)
        assert engine.count("create") == 0
        assert engine.count("stop") == 0

    def test_create_failure(self, orchestrator, action_context, engine):
        engine.create_error = ContainerCreateError("no space left on device")

        result = orchestrator(action_context())

        assert "Failed to create container: no space left on device" in response_content(result.items)
        assert engine.count("stop") == 0

    def test_disallowed_image(self, orchestrator, action_context, engine, interaction):
        result = orchestrator(action_context(proposal={**PROPOSAL, "image": "evil/miner:1"}))

        content = response_content(result.items)
        assert "Image 'evil/miner:1' is not allowed" in content
        assert interaction.prompts == []
        assert engine.calls == []

    def test_user_rejects(self, orchestrator, action_context, engine, interaction):
        interaction.confirmations = [ConfirmationResult(confirmed=False, answer="too risky")]

        result = orchestrator(action_context())

        assert len(result.items) == 2
        assert result.items[-1].text == "I reject running the container task. too risky"
        assert response_content(result.items) == "Container task rejected by user."
        assert engine.calls == []

    def test_loop_exception_cleans_up_once(self, orchestrator, action_context, engine, generator):
        generator.push(RuntimeError("provider exploded"))

        result = orchestrator(action_context())

        assert "An error occurred during the container task: provider exploded" in response_content(result.items)
        assert_cleaned_up_once(engine)

    def test_stop_failure_still_removes(self, orchestrator, action_context, engine, generator):
        engine.stop_error = SandboxError("daemon hiccup")
        generator.push(call_part("completeTask", summary="ok"))

        result = orchestrator(action_context())

        assert response_content(result.items).startswith("Task finished with status: Success.")
        assert_cleaned_up_once(engine)

    def test_nothing_proposed(self, orchestrator, action_context, engine, generator):
        generator.push([])

        result = orchestrator(action_context(proposal=None))

        assert "No container task was proposed" in response_content(result.items)
        assert result.items[0].function_calls[0].id == "action-1"
        assert engine.calls == []


class TestCancellation:
    def test_cancel_during_loop(self, orchestrator, action_context, engine, generator, cancel_token):
        def cancel(transcript, config):
            cancel_token.cancel()
            return call_part("runCommand", **RUN_ECHO)

        generator.push(cancel)

        result = orchestrator(action_context())

        content = response_content(result.items)
        assert content.startswith("Task finished with status: Failed.")
        assert "Task cancelled by user" in content
        assert result.step_result["cancelled"] is True
        assert engine.count("exec") == 0
        assert_cleaned_up_once(engine)

    def test_cancel_before_confirmation(self, orchestrator, action_context, engine, cancel_token):
        cancel_token.cancel()

        result = orchestrator(action_context())

        assert "Task cancelled by user" in response_content(result.items)
        assert engine.calls == []

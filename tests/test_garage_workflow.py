import asyncio
import unittest
from unittest.mock import AsyncMock, patch

import httpx

import provider_adapter
from credential_store import Connection, CredentialStore
from garage_workflow import (
    GarageWorkflow,
    Stage,
    StageStatus,
    render_handoff_prompt,
)
from input_validation import AssignmentError, ProviderError, ValidationError
from notifications import MemoryNotifier
from provider_adapter import ProviderResponse
from role_catalog import TEMPLATES, get_template

FULL_TEAM = {"A": "openai", "B": "anthropic", "C": "google", "D": "groq", "E": "openai"}


class FakeCredentials(CredentialStore):
    def __init__(self, keys):
        self.connections = {
            provider_id: Connection(provider_id, "connected", key)
            for provider_id, key in keys.items()
        }

    def get(self, provider_id):
        return self.connections.get(provider_id)


def reply(content):
    return ProviderResponse("fake", content)


class WorkflowTestCase(unittest.TestCase):
    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.notifier = MemoryNotifier()
        self.credentials = FakeCredentials(
            {"openai": "sk-openai", "anthropic": "sk-ant", "google": "g-key", "groq": "gsk"}
        )

    def tearDown(self):
        self.loop.close()

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)

    def make_workflow(self, invoke, template_id="build", assignments=None):
        workflow = GarageWorkflow(
            get_template(template_id),
            self.credentials,
            self.notifier,
            invoke=invoke,
            step_delay=0,
        )
        for role_id, provider_id in (assignments or FULL_TEAM).items():
            workflow.assign_role(role_id, provider_id)
        return workflow


class TestStart(WorkflowTestCase):
    def test_start_requires_two_assigned_roles(self):
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke, assignments={"A": "openai"})

        with self.assertRaises(ValidationError):
            self.run_async(workflow.start("build me an app"))

        invoke.assert_not_called()
        self.assertFalse(workflow.started)
        self.assertTrue(all(s.status is StageStatus.PENDING for s in workflow.stages))

    def test_start_rejects_blank_prompt(self):
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke, assignments={"A": "openai", "B": "groq"})

        with self.assertRaises(ValidationError):
            self.run_async(workflow.start("   \n"))

        invoke.assert_not_called()
        self.assertFalse(workflow.started)

    def test_first_stage_awaits_decision_for_every_template(self):
        for template_id in TEMPLATES:
            with self.subTest(template=template_id):
                invoke = AsyncMock(return_value=reply("objectives"))
                workflow = self.make_workflow(invoke, template_id=template_id)

                stage = self.run_async(workflow.start("a task"))

                self.assertIs(stage, workflow.stages[0])
                self.assertEqual(stage.status, StageStatus.AWAITING_USER_DECISION)
                self.assertTrue(workflow.awaiting_user_decision)
                self.assertEqual(invoke.call_count, 1)
                self.assertTrue(
                    all(s.status is StageStatus.PENDING for s in workflow.stages[1:])
                )

    def test_first_stage_prompt_embeds_role_title_and_request(self):
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke)

        self.run_async(workflow.start("build a todo app"))

        provider_id, rendered, api_key, model = invoke.call_args[0]
        self.assertEqual(provider_id, "openai")
        self.assertEqual(api_key, "sk-openai")
        self.assertIsNone(model)
        self.assertIn("Prompt Refiner", rendered)
        self.assertIn("Create/Build App", rendered)
        self.assertIn("build a todo app", rendered)
        self.assertEqual(workflow.stages[0].prompt, "build a todo app")
        self.assertEqual(workflow.stages[0].output, "objectives")

    def test_start_twice_is_rejected(self):
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("a task"))

        with self.assertRaises(ValidationError):
            self.run_async(workflow.start("another task"))
        self.assertEqual(invoke.call_count, 1)


class TestApprovalGate(WorkflowTestCase):
    def test_submit_refinement_reruns_first_stage(self):
        invoke = AsyncMock(side_effect=[reply("first draft"), reply("second draft")])
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("build a todo app"))

        stage = self.run_async(workflow.submit_refinement("add dark mode"))

        rendered = invoke.call_args_list[1][0][1]
        self.assertIn("build a todo app", rendered)
        self.assertIn("Additional requirements: add dark mode", rendered)
        self.assertEqual(
            stage.prompt, "build a todo app\n\nAdditional requirements: add dark mode"
        )
        self.assertEqual(stage.output, "second draft")
        self.assertEqual(stage.status, StageStatus.AWAITING_USER_DECISION)

    def test_submit_refinement_requires_text(self):
        invoke = AsyncMock(return_value=reply("draft"))
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("build a todo app"))

        with self.assertRaises(ValidationError):
            self.run_async(workflow.submit_refinement("   "))
        self.assertEqual(invoke.call_count, 1)
        self.assertEqual(workflow.stages[0].output, "draft")

    def test_gate_operations_need_a_waiting_first_stage(self):
        workflow = self.make_workflow(AsyncMock(return_value=reply("draft")))

        with self.assertRaises(ValidationError):
            self.run_async(workflow.submit_refinement("more"))
        with self.assertRaises(ValidationError):
            self.run_async(workflow.advance())

    def test_advance_runs_every_remaining_stage(self):
        invoke = AsyncMock(
            side_effect=[
                reply("objectives"),
                reply("backend code"),
                reply("frontend code"),
                reply("review notes"),
                reply("docs"),
            ]
        )
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("build a todo app"))

        self.run_async(workflow.advance())

        self.assertEqual(invoke.call_count, 5)
        self.assertTrue(workflow.is_complete)
        self.assertEqual(
            [s.output for s in workflow.stages],
            ["objectives", "backend code", "frontend code", "review notes", "docs"],
        )
        handoff = invoke.call_args_list[1][0][1]
        self.assertEqual(invoke.call_args_list[1][0][0], "anthropic")
        self.assertIn("Backend Developer", handoff)
        self.assertIn("Prompt Refiner", handoff)
        self.assertIn("objectives", handoff)
        self.assertIn("backend code", invoke.call_args_list[2][0][1])
        self.assertIn("Workflow completed successfully!", self.notifier.successes)

    def test_previous_output_is_forwarded_verbatim(self):
        long_output = "line\n" * 20000 + "THE END"
        invoke = AsyncMock(side_effect=[reply(long_output)] + [reply("ok")] * 4)
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("a task"))

        self.run_async(workflow.advance())

        self.assertIn(long_output, invoke.call_args_list[1][0][1])

    def test_auto_advance_waits_step_delay(self):
        invoke = AsyncMock(return_value=reply("ok"))
        workflow = self.make_workflow(invoke)
        workflow.step_delay = 0.5
        self.run_async(workflow.start("a task"))

        with patch("garage_workflow.asyncio.sleep", new=AsyncMock()) as sleep:
            self.run_async(workflow.advance())

        # after stages B, C and D; none after the last stage
        self.assertEqual(sleep.await_count, 3)
        sleep.assert_awaited_with(0.5)


class TestFailures(WorkflowTestCase):
    def test_provider_error_reverts_stage_to_pending(self):
        invoke = AsyncMock(side_effect=ProviderError("OpenAI Error: Incorrect API key provided"))
        workflow = self.make_workflow(invoke)

        result = self.run_async(workflow.start("a task"))

        self.assertIsNone(result)
        stage = workflow.stages[0]
        self.assertEqual(stage.status, StageStatus.PENDING)
        self.assertEqual(stage.error, "OpenAI Error: Incorrect API key provided")
        self.assertFalse(workflow.awaiting_user_decision)
        self.assertEqual(invoke.call_count, 1)
        self.assertEqual(len(self.notifier.errors), 1)
        self.assertIn("Prompt Refiner", self.notifier.errors[0])
        self.assertIn("Incorrect API key provided", self.notifier.errors[0])

    def test_error_mid_chain_halts_and_can_be_retried(self):
        invoke = AsyncMock(
            side_effect=[
                reply("objectives"),
                reply("backend code"),
                ProviderError("Gemini Error: quota exceeded"),
            ]
        )
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("a task"))
        self.run_async(workflow.advance())

        self.assertEqual(invoke.call_count, 3)
        self.assertEqual(workflow.stages[1].status, StageStatus.COMPLETED)
        self.assertEqual(workflow.stages[2].status, StageStatus.PENDING)
        self.assertEqual(workflow.stages[3].prompt, "")
        self.assertFalse(workflow.is_complete)

        invoke.side_effect = [reply("frontend code"), reply("review"), reply("docs")]
        self.run_async(workflow.retry())

        self.assertTrue(workflow.is_complete)
        self.assertIn("backend code", invoke.call_args_list[3][0][1])

    def test_unassigned_stage_halts_chain(self):
        invoke = AsyncMock(side_effect=[reply("objectives"), reply("backend code")])
        workflow = self.make_workflow(invoke, assignments={"A": "openai", "B": "groq"})
        self.run_async(workflow.start("a task"))

        self.run_async(workflow.advance())

        self.assertEqual(workflow.stages[1].status, StageStatus.COMPLETED)
        self.assertEqual(workflow.stages[2].status, StageStatus.PENDING)
        self.assertTrue(any("No AI assigned to role C" in e for e in self.notifier.errors))

    def test_run_stage_without_provider_raises(self):
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke, assignments={"A": "openai", "B": "groq"})
        self.run_async(workflow.start("a task"))

        with self.assertRaises(AssignmentError):
            self.run_async(workflow.run_stage(3, "do something"))
        with self.assertRaises(AssignmentError):
            self.run_async(workflow.run_stage(9, "do something"))

        self.assertEqual(workflow.stages[3].status, StageStatus.PENDING)
        self.assertEqual(workflow.stages[3].prompt, "")
        self.assertEqual(invoke.call_count, 1)

    def test_missing_credential_keeps_stage_pending_and_retryable(self):
        self.credentials = FakeCredentials({"openai": "sk-openai"})
        invoke = AsyncMock(return_value=reply("objectives"))
        workflow = self.make_workflow(invoke, assignments={"A": "groq", "B": "openai"})

        result = self.run_async(workflow.start("a task"))

        self.assertIsNone(result)
        invoke.assert_not_called()
        stage = workflow.stages[0]
        self.assertEqual(stage.status, StageStatus.PENDING)
        self.assertEqual(stage.prompt, "a task")
        self.assertEqual(stage.error, "API key not found for groq")
        self.assertIn("API key not found for groq", self.notifier.errors[0])

        self.credentials.connections["groq"] = Connection("groq", "connected", "gsk")
        stage = self.run_async(workflow.retry())

        self.assertEqual(stage.status, StageStatus.AWAITING_USER_DECISION)
        self.assertIsNone(stage.error)
        self.assertIn("a task", invoke.call_args[0][1])

    def test_unexpected_failure_reverts_stage_to_pending(self):
        invoke = AsyncMock(
            side_effect=[AttributeError("'str' object has no attribute 'get'"), reply("objectives")]
        )
        workflow = self.make_workflow(invoke)

        result = self.run_async(workflow.start("build a todo app"))

        self.assertIsNone(result)
        self.assertIsNone(workflow.processing_stage)
        self.assertEqual(workflow.stages[0].status, StageStatus.PENDING)
        self.assertIn("has no attribute", workflow.stages[0].error)
        self.assertEqual(len(self.notifier.errors), 1)

        stage = self.run_async(workflow.retry())

        self.assertEqual(stage.status, StageStatus.AWAITING_USER_DECISION)
        self.assertEqual(stage.output, "objectives")

    def test_malformed_provider_reply_is_a_stage_failure(self):
        replies = [
            httpx.Response(200, json={"choices": [{"message": "plain string"}]}),
            httpx.Response(200, json={"choices": [{"message": {"content": "objectives"}}]}),
        ]
        transport = httpx.MockTransport(lambda request: replies.pop(0))

        async def invoke_over_mock(provider_id, prompt, api_key, model=None):
            async with httpx.AsyncClient(transport=transport) as client:
                return await provider_adapter.invoke(
                    provider_id, prompt, api_key, model, http_client=client
                )

        workflow = self.make_workflow(invoke_over_mock)

        self.assertIsNone(self.run_async(workflow.start("build a todo app")))
        self.assertEqual(workflow.stages[0].status, StageStatus.PENDING)
        self.assertEqual(workflow.stages[0].error, "OpenAI Error: malformed response")

        stage = self.run_async(workflow.retry())
        self.assertEqual(stage.output, "objectives")


class TestResetAndGenerations(WorkflowTestCase):
    def snapshot(self, workflow):
        return (
            [(s.status, s.prompt, s.output, s.provider_id, s.error) for s in workflow.stages],
            dict(workflow.role_assignments),
            workflow.started,
            workflow.current_index,
        )

    def test_reset_restores_pending_and_is_idempotent(self):
        invoke = AsyncMock(return_value=reply("ok"))
        workflow = self.make_workflow(invoke)
        self.run_async(workflow.start("a task"))
        self.run_async(workflow.advance())
        self.assertTrue(workflow.is_complete)

        workflow.reset()
        once = self.snapshot(workflow)
        workflow.reset()
        twice = self.snapshot(workflow)

        self.assertEqual(once, twice)
        stages, assignments, started, current = once
        self.assertEqual(assignments, {})
        self.assertFalse(started)
        self.assertEqual(current, 0)
        for status, prompt, output, provider_id, error in stages:
            self.assertEqual(status, StageStatus.PENDING)
            self.assertEqual(prompt, "")
            self.assertIsNone(output)
            self.assertIsNone(provider_id)
            self.assertIsNone(error)

    def test_result_arriving_after_reset_is_discarded(self):
        async def scenario():
            gate = asyncio.Event()

            async def slow_invoke(*args, **kwargs):
                await gate.wait()
                return reply("stale answer")

            workflow = self.make_workflow(slow_invoke)
            task = asyncio.ensure_future(workflow.start("a task"))
            await asyncio.sleep(0)
            self.assertEqual(workflow.stages[0].status, StageStatus.PROCESSING)

            workflow.reset()
            gate.set()
            return workflow, await task

        workflow, result = self.run_async(scenario())

        self.assertIsNone(result)
        self.assertFalse(workflow.started)
        for stage in workflow.stages:
            self.assertEqual(stage.status, StageStatus.PENDING)
            self.assertIsNone(stage.output)

    def test_second_stage_cannot_run_while_first_is_processing(self):
        async def scenario():
            gate = asyncio.Event()

            async def slow_invoke(*args, **kwargs):
                await gate.wait()
                return reply("objectives")

            workflow = self.make_workflow(slow_invoke)
            task = asyncio.ensure_future(workflow.start("a task"))
            await asyncio.sleep(0)
            with self.assertRaises(ValidationError):
                await workflow.run_stage(1, "jump the queue")
            gate.set()
            await task
            return workflow

        workflow = self.run_async(scenario())

        self.assertEqual(workflow.stages[0].status, StageStatus.AWAITING_USER_DECISION)
        self.assertEqual(workflow.stages[1].status, StageStatus.PENDING)


class TestAssignmentsAndObservers(WorkflowTestCase):
    def test_assign_role_validation(self):
        workflow = self.make_workflow(AsyncMock(), assignments={"A": "openai"})

        with self.assertRaises(ValidationError):
            workflow.assign_role("Z", "openai")
        with self.assertRaises(ValidationError):
            workflow.assign_role("B", "mystery-ai")

        workflow.assign_role("A", "")
        self.assertEqual(workflow.role_assignments, {})

    def test_assignments_are_locked_after_start(self):
        workflow = self.make_workflow(AsyncMock(return_value=reply("ok")))
        self.run_async(workflow.start("a task"))

        with self.assertRaises(ValidationError):
            workflow.assign_role("B", "google")
        self.assertEqual(workflow.stages[1].provider_id, "anthropic")

    def test_subscribers_see_each_transition_until_unsubscribed(self):
        seen = []
        workflow = self.make_workflow(AsyncMock(return_value=reply("ok")))
        unsubscribe = workflow.subscribe(lambda wf: seen.append(wf.stages[0].status))

        self.run_async(workflow.start("a task"))

        self.assertIn(StageStatus.PROCESSING, seen)
        self.assertEqual(seen[-1], StageStatus.AWAITING_USER_DECISION)

        count = len(seen)
        unsubscribe()
        workflow.reset()
        self.assertEqual(len(seen), count)


class TestPromptRendering(unittest.TestCase):
    def test_handoff_prompt_names_both_roles(self):
        role = get_template("math").get_role("C")
        previous = Stage("B", "Solution Strategist")

        prompt = render_handoff_prompt(previous, "Use substitution.", role)

        self.assertIn("Calculator", prompt)
        self.assertIn("Performs calculations and computations", prompt)
        self.assertIn("Solution Strategist", prompt)
        self.assertIn("Use substitution.", prompt)


if __name__ == "__main__":
    unittest.main()

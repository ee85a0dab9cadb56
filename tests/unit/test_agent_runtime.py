"""Unit tests for the agent runtime against a real job store and mocked browser/model."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

from agent import MAX_STEPS_REASON, AgentRuntime
from job_types import AgentIdentity, AgentStatus, ResultStatus, StepStatus, TestStatus
from storage import LocalScreenshotStorage


def _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision=None):
    identity = AgentIdentity.generate(browser_type="chromium")
    store.register_agent(identity)
    return AgentRuntime(
        swarm_config,
        store_client,
        mock_browser,
        LocalScreenshotStorage(temp_dir / "screenshots"),
        decision=decision,
        identity=identity,
    )


def _decision(*replies):
    decision = AsyncMock()
    decision.complete = AsyncMock(side_effect=list(replies))
    return decision


SCRIPT = [
    {"type": "navigate", "url": "https://example.com"},
    {"type": "click", "selector": "#more"},
    {"type": "assert", "selector": "h1", "expected": "Example"},
]


class TestScriptedMode:
    def test_successful_run_records_every_step(self, swarm_config, store, store_client, mock_browser, temp_dir):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        test_id = store.create_test("Script", "https://example.com", actions=SCRIPT)

        assert asyncio.run(runtime.run_once()) == test_id

        assert store.get_test_status(test_id) == TestStatus.COMPLETED
        (result,) = store.list_results(test_id)
        assert result.status == ResultStatus.COMPLETED
        assert result.step_numbers == [1, 2, 3]
        assert [s.action_type for s in result.steps] == ["navigate", "click", "assert"]
        assert all(s.status == StepStatus.PASSED for s in result.steps)
        assert result.steps[0].screenshot_before == f"{result.id}/step-1-before.jpg"
        assert result.steps[0].screenshot_after == f"{result.id}/step-1-after.jpg"
        assert (temp_dir / "screenshots" / "test-screenshots" / result.id / "step-3-after.jpg").exists()

        agent = store.get_agent(runtime.agent_id)
        assert agent.status == AgentStatus.IDLE
        assert agent.current_test_id is None
        assert agent.successful_tests == 1

    def test_failing_step_is_retried_then_failed(
        self, swarm_config, store, store_client, mock_browser, mock_page, temp_dir
    ):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        mock_page.click.side_effect = RuntimeError("element detached")
        test_id = store.create_test("Flaky", "https://example.com", actions=SCRIPT, max_retries=1)

        async def scenario():
            first = await runtime.execute_claimed(await store_client.claim_test(runtime.agent_id))
            assert first == TestStatus.PENDING
            case = store.get_test(test_id)
            assert case.status == TestStatus.PENDING
            assert case.retry_count == 1

            assert await runtime.run_once() == test_id
            assert await runtime.run_once() is None

        asyncio.run(scenario())

        case = store.get_test(test_id)
        assert case.status == TestStatus.FAILED
        assert case.retry_count == 1

        results = store.list_results(test_id)
        assert len(results) == 2
        assert [r.metadata["attempt"] for r in results] == [1, 2]
        for result in results:
            assert result.status == ResultStatus.FAILED
            assert "element detached" in result.error_message
            assert result.step_numbers == [1, 2]
            assert result.steps[0].status == StepStatus.PASSED
            assert result.steps[1].status == StepStatus.FAILED

        agent = store.get_agent(runtime.agent_id)
        assert agent.status == AgentStatus.IDLE
        assert agent.total_tests_run == 2
        assert agent.failed_tests == 2

    def test_cancelled_test_stops_at_next_step(
        self, swarm_config, store, store_client, mock_browser, mock_page, temp_dir
    ):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        test_id = store.create_test("Cancelled", "https://example.com", actions=SCRIPT)
        mock_page.goto.side_effect = lambda *args, **kwargs: store.cancel_test(test_id)

        async def scenario():
            return await runtime.execute_claimed(await store_client.claim_test(runtime.agent_id))

        assert asyncio.run(scenario()) == TestStatus.CANCELLED
        assert store.get_test_status(test_id) == TestStatus.CANCELLED
        (result,) = store.list_results(test_id)
        assert result.status == ResultStatus.CANCELLED
        assert result.step_numbers == [1]
        assert store.get_agent(runtime.agent_id).status == AgentStatus.IDLE

    def test_screenshot_failures_do_not_fail_the_step(
        self, swarm_config, store, store_client, mock_browser, temp_dir
    ):
        from exceptions import ScreenshotError

        mock_browser.screenshot.side_effect = ScreenshotError("page crashed")
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        test_id = store.create_test("No shots", "https://example.com", actions=SCRIPT[:1])

        asyncio.run(runtime.run_once())

        (result,) = store.list_results(test_id)
        assert result.status == ResultStatus.COMPLETED
        assert result.steps[0].screenshot_before is None
        assert result.steps[0].screenshot_after is None

    def test_release_failure_after_success_is_not_retried(
        self, swarm_config, store, store_client, mock_browser, temp_dir
    ):
        from exceptions import JobStoreError

        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        test_id = store.create_test("Passed", "https://example.com", actions=SCRIPT[:1], max_retries=2)
        store_client.release_test = AsyncMock(side_effect=JobStoreError("disk I/O error"))

        async def scenario():
            return await runtime.execute_claimed(await store_client.claim_test(runtime.agent_id))

        assert asyncio.run(scenario()) == TestStatus.COMPLETED
        case = store.get_test(test_id)
        assert case.status == TestStatus.RUNNING
        assert case.retry_count == 0
        (result,) = store.list_results(test_id)
        assert result.status == ResultStatus.COMPLETED
        assert store.get_agent(runtime.agent_id).status == AgentStatus.IDLE


class TestAIMode:
    def test_immediate_completion_is_one_step(self, swarm_config, store, store_client, mock_browser, temp_dir):
        decision = _decision('{"type": "complete", "success": true, "reason": "goal visible"}')
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision)
        test_id = store.create_test("AI", "https://example.com", ai_instruction="Confirm the heading")

        asyncio.run(runtime.run_once())

        mock_browser.goto.assert_awaited_once_with("https://example.com")
        assert store.get_test_status(test_id) == TestStatus.COMPLETED
        (result,) = store.list_results(test_id)
        assert result.step_numbers == [1]
        assert result.steps[0].action_type == "complete"
        assert result.steps[0].metadata == {"success": True, "reason": "goal visible"}
        assert result.metadata["mode"] == "ai"

    def test_step_budget_is_exhausted(self, swarm_config, store, store_client, mock_browser, temp_dir):
        decision = AsyncMock()
        decision.complete = AsyncMock(return_value='{"type": "wait", "timeout": 10}')
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision)
        test_id = store.create_test(
            "Endless", "https://example.com", ai_instruction="Never finishes", max_steps=3, max_retries=0
        )

        asyncio.run(runtime.run_once())

        assert decision.complete.await_count == 3
        assert store.get_test_status(test_id) == TestStatus.FAILED
        (result,) = store.list_results(test_id)
        assert result.step_numbers == [1, 2, 3]
        assert result.status == ResultStatus.FAILED
        assert result.error_message == MAX_STEPS_REASON

    def test_unparseable_reply_is_recorded_and_fed_back(
        self, swarm_config, store, store_client, mock_browser, mock_page, temp_dir
    ):
        decision = _decision(
            "I think I should click the button.",
            '```json\n{"type": "click", "selector": "#more"}\n```',
            '{"type": "complete", "success": true, "reason": "done"}',
        )
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision)
        test_id = store.create_test("AI", "https://example.com", ai_instruction="Open more info")

        asyncio.run(runtime.run_once())

        (result,) = store.list_results(test_id)
        assert [s.action_type for s in result.steps] == ["invalid", "click", "complete"]
        assert result.steps[0].status == StepStatus.FAILED
        assert result.status == ResultStatus.COMPLETED
        mock_page.click.assert_awaited_once()

        second_call = decision.complete.await_args_list[1].args[0]
        assert "The previous action failed" in second_call[-1]["content"][1]["text"]

    def test_model_reported_failure_fails_without_retry(
        self, swarm_config, store, store_client, mock_browser, temp_dir
    ):
        decision = _decision('{"type": "complete", "success": false, "reason": "signup is broken"}')
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision)
        test_id = store.create_test("AI", "https://example.com", ai_instruction="Sign up")

        asyncio.run(runtime.run_once())

        case = store.get_test(test_id)
        assert case.status == TestStatus.FAILED
        assert case.retry_count == 0
        (result,) = store.list_results(test_id)
        assert result.error_message == "signup is broken"

    def test_model_error_becomes_failed_completion(self, swarm_config, store, store_client, mock_browser, temp_dir):
        from exceptions import LLMConnectionError

        decision = _decision(LLMConnectionError("connection refused"))
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision)
        test_id = store.create_test("AI", "https://example.com", ai_instruction="Sign up")

        asyncio.run(runtime.run_once())

        (result,) = store.list_results(test_id)
        assert result.status == ResultStatus.FAILED
        assert result.error_message.startswith("Model error:")
        assert result.steps[0].action_data["type"] == "complete"
        assert result.steps[0].status == StepStatus.FAILED

    def test_ai_test_without_model_is_retried(self, swarm_config, store, store_client, mock_browser, temp_dir):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir, decision=None)
        test_id = store.create_test("AI", "https://example.com", ai_instruction="Sign up", max_retries=1)

        status = asyncio.run(runtime.execute_claimed(store.claim_test(runtime.agent_id)))

        assert status == TestStatus.PENDING
        assert store.get_test(test_id).retry_count == 1


class TestLifecycle:
    def test_start_registers_and_close_marks_offline(self, swarm_config, store, store_client, mock_browser, temp_dir):
        runtime = AgentRuntime(
            swarm_config, store_client, mock_browser, LocalScreenshotStorage(temp_dir / "screenshots")
        )

        async def scenario():
            await runtime.start()
            registered = store.get_agent(runtime.agent_id)
            await runtime.close()
            return registered

        registered = asyncio.run(scenario())
        assert registered.status == AgentStatus.IDLE
        assert registered.metadata["browser"] == {"browser_type": "chromium", "headless": True}
        assert store.get_agent(runtime.agent_id).status == AgentStatus.OFFLINE
        mock_browser.close.assert_awaited_once()

    def test_run_stops_after_max_tests(self, swarm_config, store, store_client, mock_browser, temp_dir):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        for n in range(3):
            store.create_test(f"t{n}", "https://example.com", actions=SCRIPT[:1])

        assert asyncio.run(runtime.run(max_tests=2)) == 2
        assert store.stats().tests == {"completed": 2, "pending": 1}

    def test_stopped_runtime_does_not_claim(self, swarm_config, store, store_client, mock_browser, temp_dir):
        runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
        store.create_test("t", "https://example.com", actions=SCRIPT[:1])
        runtime.stop()

        assert asyncio.run(runtime.run()) == 0
        assert runtime.stopping
        assert store.stats().tests == {"pending": 1}


def test_step_action_data_is_stored_as_sent(swarm_config, store, store_client, mock_browser, temp_dir):
    runtime = _runtime(swarm_config, store, store_client, mock_browser, temp_dir)
    test_id = store.create_test("t", "https://example.com", actions=[{"type": "press", "key": "Enter"}])

    asyncio.run(runtime.run_once())

    (result,) = store.list_results(test_id)
    assert json.dumps(result.steps[0].action_data) == json.dumps({"type": "press", "key": "Enter"})

"""Agent runtime: claims queued tests and executes them in one browser session."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import time
from typing import Any, Callable, Dict, Optional, Tuple

from actions import ActionExecutor, is_terminal, parse_action
from browser import BrowserSession
from config import SwarmConfig
from decision import DecisionClient, Transcript, parse_action_reply
from exceptions import (
    ActionError,
    ActionParseError,
    ConfigurationError,
    LLMError,
    ScreenshotError,
    StorageError,
    SwarmError,
    TestCancelledError,
)
from job_store import JobStoreClient
from job_types import AgentIdentity, AgentStatus, ExecutionMode, ResultStatus, StepStatus, TestCase, TestStatus
from live_stream import LiveStreamClient
from prompts import build_step_text, get_system_prompt
from storage import ScreenshotStorage, screenshot_path

MAX_STEPS_REASON = "max steps reached"


async def _wait_or_timeout(event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds, returning early (True) once ``event`` is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class AgentRuntime:
    """One identity, one browser, one sequential execution loop.

    Heartbeats and live frames run as side tasks; they only read the current
    page and write the agent's own identity row.
    """

    def __init__(
        self,
        config: SwarmConfig,
        store: JobStoreClient,
        browser: BrowserSession,
        storage: ScreenshotStorage,
        decision: Optional[DecisionClient] = None,
        live_stream: Optional[LiveStreamClient] = None,
        identity: Optional[AgentIdentity] = None,
        executor_factory: Callable[..., ActionExecutor] = ActionExecutor,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = store
        self.browser = browser
        self.storage = storage
        self.decision = decision
        self.live_stream = live_stream
        self.identity = identity or AgentIdentity.generate(browser_type=config.browser.browser)
        self.executor_factory = executor_factory
        self.logger = logger or logging.getLogger("swarm.agent")

        self.current_test_id: Optional[str] = None
        self.tests_processed = 0
        self._stop = asyncio.Event()
        self._closed = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def agent_id(self) -> str:
        return self.identity.id

    @property
    def name(self) -> str:
        return self.identity.name

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the browser, register the identity and start the side tasks."""
        if not self.browser.started:
            await self.browser.start()
        self.identity.metadata.update(
            {
                "pid": os.getpid(),
                "python": platform.python_version(),
                "live_stream": self.live_stream is not None,
                "browser": self.browser.describe(),
            }
        )
        await self.store.register_agent(self.identity)
        self.logger.info(f"Agent registered: {self.name} ({self.agent_id})")

        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat-{self.name}"))
        if self.live_stream is not None:
            self.live_stream.start()
            self._tasks.append(asyncio.create_task(self._frame_loop(), name=f"frames-{self.name}"))

    def stop(self) -> None:
        """Ask the claim loop to exit after the current test."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def close(self) -> None:
        """Stop side tasks, disconnect from the hub, mark offline and close the browser."""
        self._stop.set()
        self._closed.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        if self.live_stream is not None:
            await self.live_stream.stop()
        try:
            await self.store.set_agent_status(self.agent_id, AgentStatus.OFFLINE)
        except SwarmError as e:
            self.logger.error(f"Failed to mark agent offline: {e}")
        if self.decision is not None:
            await self.decision.close()
        await self.browser.close()
        self.logger.info(f"Agent stopped: {self.name} ({self.tests_processed} tests processed)")

    async def _heartbeat_loop(self) -> None:
        interval = self.config.agent.heartbeat_interval
        while not self._closed.is_set():
            try:
                await self.store.heartbeat(self.agent_id)
            except SwarmError as e:
                self.logger.warning(f"Heartbeat failed: {e}")
            if await _wait_or_timeout(self._closed, interval):
                break

    async def _frame_loop(self) -> None:
        stream = self.config.live_stream
        period = 1.0 / stream.fps
        while not self._closed.is_set():
            test_id = self.current_test_id
            if test_id and self.live_stream is not None and self.live_stream.connected:
                try:
                    frame = await self.browser.screenshot(quality=stream.quality)
                    await self.live_stream.send_frame(test_id, frame)
                except SwarmError as e:
                    self.logger.debug(f"Frame capture skipped: {e}")
            if await _wait_or_timeout(self._closed, period):
                break

    async def _emit(self, event_type: str, **fields: Any) -> None:
        if self.live_stream is not None:
            await self.live_stream.send_event(event_type, **fields)

    # ─────────────────────────────────────────────────────────────────────────
    # Claim loop
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self, max_tests: Optional[int] = None) -> int:
        """Poll for work until stopped (or until ``max_tests`` tests were executed)."""
        self.logger.info(f"Agent {self.name} polling for tests")
        while not self._stop.is_set():
            await self.run_once()
            if max_tests is not None and self.tests_processed >= max_tests:
                break
        return self.tests_processed

    async def run_once(self) -> Optional[str]:
        """One claim attempt; executes the claimed test, if any, and returns its id."""
        agent_cfg = self.config.agent
        try:
            test_id = await self.store.claim_test(self.agent_id)
        except SwarmError as e:
            self.logger.error(f"Claim failed, backing off {agent_cfg.error_backoff}s: {e}")
            await _wait_or_timeout(self._stop, agent_cfg.error_backoff)
            return None

        if test_id is None:
            await _wait_or_timeout(self._stop, agent_cfg.poll_interval)
            return None

        await self.execute_claimed(test_id)
        return test_id

    async def execute_claimed(self, test_id: str) -> TestStatus:
        """Run a test this agent has claimed and report its outcome; returns the test's next status."""
        self.current_test_id = test_id
        self.tests_processed += 1
        started = time.monotonic()
        result_id: Optional[str] = None
        final_status = TestStatus.FAILED
        self.logger.info(f"Claimed test {test_id}")
        await self._emit("test_started", testId=test_id)

        try:
            test_case = await self.store.get_test(test_id)
            result_id = await self.store.create_result(
                test_id,
                self.agent_id,
                metadata={"mode": test_case.mode.value, "attempt": test_case.retry_count + 1},
            )
            self.logger.info(f"Running test: {test_case.name} ({test_case.mode.value} mode)")

            if test_case.mode == ExecutionMode.AI:
                success, reason = await self._run_ai(test_case, result_id)
            else:
                await self._run_scripted(test_case, result_id)
                success, reason = True, None

            final_status = TestStatus.COMPLETED if success else TestStatus.FAILED
            await self.store.finish_result(
                result_id,
                ResultStatus.COMPLETED if success else ResultStatus.FAILED,
                error_message=None if success else reason,
                metadata={"reason": reason} if reason else None,
            )
            self.logger.info(f"Test {test_case.name} {final_status.value}" + (f": {reason}" if reason else ""))
            # The run itself is over; a failed release must not requeue it.
            try:
                await self.store.release_test(self.agent_id, test_id, final_status)
            except SwarmError as e:
                self.logger.error(f"Could not release test {test_id}; leaving it running: {e}")

        except TestCancelledError as e:
            final_status = TestStatus.CANCELLED
            self.logger.info(f"Test {test_id} cancelled; abandoning")
            if result_id is not None:
                await self.store.finish_result(result_id, ResultStatus.CANCELLED, error_message=e.message)

        except Exception as e:
            final_status = await self._handle_failure(test_id, result_id, e)

        finally:
            self.current_test_id = None
            try:
                await self.store.set_agent_status(self.agent_id, AgentStatus.IDLE)
            except SwarmError as e:
                self.logger.error(f"Failed to return agent to idle: {e}")
            await self._emit(
                "test_completed",
                testId=test_id,
                status=final_status.value,
                durationMs=int((time.monotonic() - started) * 1000),
            )

        return final_status

    async def _handle_failure(self, test_id: str, result_id: Optional[str], error: Exception) -> TestStatus:
        """Requeue the test while it has retries left, otherwise fail it for good."""
        self.logger.error(f"Test {test_id} failed: {error}")
        try:
            if result_id is not None:
                await self.store.finish_result(result_id, ResultStatus.FAILED, error_message=str(error))
            if await self.store.requeue_with_retry(test_id, self.agent_id):
                self.logger.info(f"Test {test_id} returned to the queue for retry")
                return TestStatus.PENDING
            await self.store.release_test(self.agent_id, test_id, TestStatus.FAILED)
            self.logger.warning(f"Test {test_id} exhausted its retries; marked failed")
        except SwarmError as e:
            self.logger.error(f"Could not record failure of test {test_id}: {e}")
        return TestStatus.FAILED

    async def _check_cancelled(self, test_id: str) -> None:
        if await self.store.get_test_status(test_id) == TestStatus.CANCELLED:
            raise TestCancelledError(test_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Steps and screenshots
    # ─────────────────────────────────────────────────────────────────────────

    async def _save_screenshot(self, result_id: str, step_number: int, phase: str, image: bytes) -> Optional[str]:
        path = screenshot_path(result_id, step_number, phase)
        try:
            return await asyncio.to_thread(self.storage.upload, path, image)
        except StorageError as e:
            self.logger.warning(f"Screenshot not stored ({path}): {e}")
            return None

    async def _capture(self, result_id: str, step_number: int, phase: str) -> Optional[str]:
        """Screenshot the page and store it; a failed capture leaves the reference empty."""
        try:
            image = await self.browser.screenshot(quality=self.config.agent.screenshot_quality)
        except ScreenshotError as e:
            self.logger.warning(f"Step {step_number} {phase} screenshot failed: {e}")
            return None
        return await self._save_screenshot(result_id, step_number, phase, image)

    async def _record_step(
        self,
        result_id: str,
        step_number: int,
        action_data: Dict[str, Any],
        executor: ActionExecutor,
        screenshot_before: Optional[str],
        settle_delay: float = 0.0,
    ) -> Dict[str, Any]:
        """Open a step, execute its action and close it as passed or failed.

        Failures are recorded on the step and re-raised.
        """
        step_id = await self.store.create_step(result_id, step_number, action_data, screenshot_before)
        try:
            outcome = await executor.execute(parse_action(action_data))
        except Exception as e:
            after = await self._capture(result_id, step_number, "after")
            await self.store.finish_step(step_id, StepStatus.FAILED, after, error_message=str(e))
            raise
        if settle_delay:
            await asyncio.sleep(settle_delay)
        after = await self._capture(result_id, step_number, "after")
        await self.store.finish_step(step_id, StepStatus.PASSED, after, metadata=outcome)
        self.logger.info(f"Step {step_number} passed: {action_data.get('type')}")
        return outcome

    # ─────────────────────────────────────────────────────────────────────────
    # Scripted mode
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_scripted(self, test_case: TestCase, result_id: str) -> None:
        """Execute the fixed action list in order; the first failure aborts the test."""
        executor = self.executor_factory(self.browser.page, logger=self.logger)
        for step_number, action_data in enumerate(test_case.actions, start=1):
            await self._check_cancelled(test_case.id)
            before = await self._capture(result_id, step_number, "before")
            await self._record_step(result_id, step_number, action_data, executor, before)

    # ─────────────────────────────────────────────────────────────────────────
    # AI mode
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_ai(self, test_case: TestCase, result_id: str) -> Tuple[bool, str]:
        """Perceive, decide, act until the model completes or the step budget runs out."""
        if self.decision is None:
            raise ConfigurationError("AI test requires a model API key", {"test_id": test_case.id})

        agent_cfg = self.config.agent
        max_steps = test_case.max_steps(agent_cfg.default_max_steps)
        transcript = Transcript(get_system_prompt(test_case, max_steps), self.config.model.max_image_width)
        executor = self.executor_factory(self.browser.page, logger=self.logger)

        self.logger.info(f"Goal: {test_case.goal}")
        await self.browser.goto(test_case.url)

        step_number = 0
        last_error: Optional[str] = None
        while step_number < max_steps:
            await self._check_cancelled(test_case.id)
            step_number += 1
            self.logger.info(f"Step {step_number}/{max_steps}: asking model for next action")

            image = await self.browser.screenshot(quality=agent_cfg.screenshot_quality)
            before = await self._save_screenshot(result_id, step_number, "before", image)
            info = await self.browser.page_info()
            transcript.add_observation(
                image, build_step_text(info["url"], info["title"], step_number, max_steps, last_error)
            )
            last_error = None

            try:
                reply = await self.decision.complete(transcript.to_messages(agent_cfg.max_transcript_images))
            except LLMError as e:
                reason = f"Model error: {e.message}"
                action_data = {"type": "complete", "success": False, "reason": reason}
                step_id = await self.store.create_step(result_id, step_number, action_data, before)
                await self.store.finish_step(step_id, StepStatus.FAILED, before, error_message=str(e))
                return False, reason

            transcript.add_reply(reply)
            try:
                action_data = parse_action_reply(reply)
                action = parse_action(action_data)
            except (ActionParseError, ActionError) as e:
                self.logger.warning(f"Step {step_number}: unusable model reply: {e.message}")
                step_id = await self.store.create_step(
                    result_id, step_number, {"type": "invalid", "raw": reply[:500]}, before
                )
                await self.store.finish_step(step_id, StepStatus.FAILED, before, error_message=str(e))
                last_error = e.message
                await asyncio.sleep(agent_cfg.parse_error_delay)
                continue

            if is_terminal(action):
                step_id = await self.store.create_step(result_id, step_number, action_data, before)
                await self.store.finish_step(
                    step_id,
                    StepStatus.PASSED,
                    before,
                    metadata={"success": action.success, "reason": action.reason},
                )
                self.logger.info(f"Model completed the test: success={action.success} ({action.reason})")
                return action.success, action.reason

            await self._record_step(
                result_id, step_number, action_data, executor, before, settle_delay=agent_cfg.settle_delay
            )

        self.logger.warning(f"Max steps ({max_steps}) reached")
        return False, MAX_STEPS_REASON

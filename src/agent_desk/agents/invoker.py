"""Agent invoker: run one claimed job and record its result."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from agent_desk.agents.base import CompletionRequest, CompletionResult, ProviderTimeoutError
from agent_desk.agents.capabilities import Capability
from agent_desk.agents.failure_classifier import FailureClassification, classify_failure
from agent_desk.agents.registry import CapabilityRegistry, ProviderRegistry
from agent_desk.agents.sanitization import sanitize_preview
from agent_desk.config import RetrySettings
from agent_desk.jobs.models import FailureStage, FailureType, JobView, TokenUsage
from agent_desk.jobs.repository import JobRepository
from agent_desk.jobs.retry_policy import decide_retry
from agent_desk.storage.common import utc_now

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_CHARS = 2_000


@dataclass(slots=True)
class InvocationOutcome:
    """Structured result of one invocation; never an escaped exception."""

    job_id: str
    success: bool
    output: dict[str, Any] | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    failure_classification: FailureClassification | None = None
    retry_scheduled: bool = False
    recorded: bool = True
    execution_time_ms: int = 0
    job: JobView | None = None

    @property
    def timed_out(self) -> bool:
        return (
            self.failure_classification is not None
            and self.failure_classification.failure_type == FailureType.TIMEOUT
        )


class _StageFailure(Exception):
    def __init__(self, stage: FailureStage, error: BaseException) -> None:
        super().__init__(str(error))
        self.stage = stage
        self.error = error


class AgentInvoker:
    """Resolves a capability, calls its provider with a timeout and parses output."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        capabilities: CapabilityRegistry,
        providers: ProviderRegistry,
        retry: RetrySettings,
        job_timeout_seconds: float,
        worker_id: str,
    ) -> None:
        self.repository = repository
        self.capabilities = capabilities
        self.providers = providers
        self.retry = retry
        self.job_timeout_seconds = job_timeout_seconds
        self.worker_id = worker_id

    def invoke(self, job: JobView) -> InvocationOutcome:
        """Execute ``job`` and persist completion, retry or failure."""

        started = time.monotonic()
        try:
            capability = self._stage(FailureStage.INPUT, self.capabilities.get, job.capability)
            provider = self._stage(FailureStage.INPUT, self.providers.get, job.provider)
            request = self._stage(FailureStage.INPUT, self._build_request, capability, job)
            result = self._stage(FailureStage.LLM_CALL, self._call_with_timeout, provider, request)
            output = self._stage(FailureStage.PARSE, capability.parse_output, result.text)
        except _StageFailure as failure:
            return self._record_failure(job=job, failure=failure, started=started)

        usage = TokenUsage(
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
        )
        elapsed_ms = _elapsed_ms(started)
        recorded = self.repository.complete_job(
            job_id=job.job_id,
            worker_id=self.worker_id,
            output=output,
            usage=usage,
            execution_time_ms=elapsed_ms,
        )
        if recorded is None:
            logger.warning(
                "Job %s lost its lease before completion was recorded; result dropped.",
                job.job_id,
            )
        return InvocationOutcome(
            job_id=job.job_id,
            success=True,
            output=output,
            token_usage=usage,
            recorded=recorded is not None,
            execution_time_ms=elapsed_ms,
            job=recorded,
        )

    def _build_request(self, capability: Capability, job: JobView) -> CompletionRequest:
        return CompletionRequest(
            provider=job.provider,
            model=job.model,
            messages=capability.build_messages(job.input),
            timeout_seconds=min(capability.timeout_seconds, self.job_timeout_seconds),
            temperature=capability.temperature,
            max_tokens=capability.max_tokens,
            metadata={"job_id": job.job_id, "capability": capability.name},
        )

    def _call_with_timeout(self, provider: Any, request: CompletionRequest) -> CompletionResult:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agent-call")
        future = executor.submit(provider.complete, request)
        try:
            return future.result(timeout=request.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise ProviderTimeoutError(
                f"{request.provider} call exceeded {request.timeout_seconds:.0f}s timeout",
            ) from None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _stage(self, stage: FailureStage, func: Any, *args: Any) -> Any:
        try:
            return func(*args)
        except Exception as error:  # noqa: BLE001
            raise _StageFailure(stage, error) from error

    def _record_failure(
        self,
        *,
        job: JobView,
        failure: _StageFailure,
        started: float,
    ) -> InvocationOutcome:
        classification = classify_failure(failure.error, stage_hint=failure.stage)
        message = sanitize_preview(
            f"{type(failure.error).__name__}: {failure.error}",
            max_chars=ERROR_MESSAGE_MAX_CHARS,
        )
        elapsed_ms = _elapsed_ms(started)
        decision = decide_retry(
            failure_type=classification.failure_type,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            base_seconds=self.retry.base_seconds,
            max_seconds=self.retry.max_seconds,
        )
        if decision.should_retry:
            logger.warning(
                "Job %s failed (%s/%s), retrying in %.1fs: %s",
                job.job_id,
                classification.stage.value,
                classification.failure_type.value,
                decision.delay_seconds,
                message,
            )
            recorded = self.repository.schedule_retry(
                job_id=job.job_id,
                worker_id=self.worker_id,
                run_after=utc_now() + timedelta(seconds=decision.delay_seconds),
                error_message=message,
                failure_stage=classification.stage,
                failure_type=classification.failure_type,
                execution_time_ms=elapsed_ms,
            )
        else:
            logger.warning(
                "Job %s failed permanently (%s/%s): %s. %s",
                job.job_id,
                classification.stage.value,
                classification.failure_type.value,
                message,
                decision.reason,
            )
            recorded = self.repository.fail_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error_message=message,
                failure_stage=classification.stage,
                failure_type=classification.failure_type,
                execution_time_ms=elapsed_ms,
            )
        if recorded is not None:
            self.repository.add_job_event(
                job_id=job.job_id,
                event_type="failure_classified",
                details=classification.to_event_details(),
            )
        else:
            logger.warning("Job %s lost its lease before failure was recorded.", job.job_id)
        return InvocationOutcome(
            job_id=job.job_id,
            success=False,
            error=message,
            failure_classification=classification,
            retry_scheduled=decision.should_retry and recorded is not None,
            recorded=recorded is not None,
            execution_time_ms=elapsed_ms,
            job=recorded,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

"""
Client-side upload queue.

Files are processed strictly one at a time: every stage change, count
pre-flight, upload call and backoff wait of the current file completes before
the next file starts. State lives in an immutable ``BatchState``; each change
goes through one of the pure reducer functions below and is then published
to subscribers.
"""
import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import requests
from pydantic import ValidationError

from .ai_client import StatementAIClient
from .errors import EndpointError, StatementError
from .models import BatchPhase, FileStatus, ProcessingStage, Transaction, UploadedFile
from .pipeline import count_response, estimate_statement, new_statement_id, process_statement
from .retry import UPLOAD_MAX_ATTEMPTS, upload_backoff

logger = logging.getLogger(__name__)

RESET_DELAY_SECONDS = 2.0


class InvalidStageTransition(ValueError):
    pass


class PasswordProfileError(LookupError):
    pass


PROFILE_NOT_FOUND = "Password profile not found"


@dataclass(frozen=True)
class PendingUpload:
    id: str
    file_name: str
    content: bytes


@dataclass(frozen=True)
class PasswordChoice:
    """What the user entered at the password prompt."""

    mode: str = "same"
    password: str = ""
    profile_id: Optional[str] = None
    per_file: Mapping[str, str] = field(default_factory=dict)
    save_as_profile: Optional[str] = None


@dataclass(frozen=True)
class BatchState:
    phase: BatchPhase = BatchPhase.IDLE
    files: Tuple[UploadedFile, ...] = ()
    prompt_file_ids: Tuple[str, ...] = ()
    current_index: Optional[int] = None
    started_at: Optional[float] = None
    total_estimated_seconds: int = 0

    def file(self, file_id: str) -> Optional[UploadedFile]:
        for f in self.files:
            if f.id == file_id:
                return f
        return None

    @property
    def processing_count(self) -> int:
        return sum(1 for f in self.files if f.status == FileStatus.PROCESSING)

    @property
    def finished_count(self) -> int:
        return sum(1 for f in self.files if f.status in (FileStatus.COMPLETED, FileStatus.ERROR))

    def elapsed_seconds(self, now: float) -> int:
        if self.started_at is None:
            return 0
        return int(now - self.started_at)

    def remaining_seconds(self, now: float) -> int:
        return max(0, self.total_estimated_seconds - self.elapsed_seconds(now))


def format_time(seconds: int) -> str:
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"


# -- reducers ---------------------------------------------------------------


def _replace_file(state: BatchState, file_id: str, **changes: Any) -> BatchState:
    files = tuple(f.model_copy(update=changes) if f.id == file_id else f for f in state.files)
    return replace(state, files=files)


def add_files(state: BatchState, new_files: Sequence[UploadedFile]) -> BatchState:
    ids = tuple(f.id for f in new_files)
    phase = state.phase
    if phase in (BatchPhase.IDLE, BatchPhase.AWAITING_PASSWORD):
        phase = BatchPhase.AWAITING_PASSWORD
    return replace(
        state,
        phase=phase,
        files=state.files + tuple(new_files),
        prompt_file_ids=state.prompt_file_ids + ids,
    )


def cancel_prompt(state: BatchState) -> BatchState:
    dropped = set(state.prompt_file_ids)
    files = tuple(f for f in state.files if not (f.id in dropped and f.status == FileStatus.PENDING))
    return replace(state, phase=BatchPhase.IDLE, files=files, prompt_file_ids=())


def remove_file(state: BatchState, file_id: str) -> BatchState:
    target = state.file(file_id)
    if target is None or target.status != FileStatus.PENDING:
        return state
    return replace(
        state,
        files=tuple(f for f in state.files if f.id != file_id),
        prompt_file_ids=tuple(i for i in state.prompt_file_ids if i != file_id),
    )


def requeue_file(state: BatchState, file_id: str) -> BatchState:
    target = state.file(file_id)
    if target is None or target.status != FileStatus.ERROR:
        return state
    state = set_stage(state, file_id, ProcessingStage.QUEUED, status=FileStatus.PENDING, error=None)
    if state.phase in (BatchPhase.IDLE, BatchPhase.DRAINED):
        state = replace(state, phase=BatchPhase.AWAITING_PASSWORD)
    return state


def start_batch(state: BatchState, now: float) -> BatchState:
    return replace(
        state,
        phase=BatchPhase.PROCESSING,
        prompt_file_ids=(),
        started_at=now,
        total_estimated_seconds=0,
    )


def begin_file(state: BatchState, file_id: str, index: int) -> BatchState:
    state = _replace_file(state, file_id, status=FileStatus.PROCESSING)
    return replace(state, current_index=index)


def set_stage(state: BatchState, file_id: str, stage: ProcessingStage, **extra: Any) -> BatchState:
    target = state.file(file_id)
    if target is None:
        raise KeyError(file_id)
    if not target.stage.can_transition(stage):
        raise InvalidStageTransition(f"{file_id}: {target.stage.value} -> {stage.value}")
    if not stage.terminal and stage != ProcessingStage.QUEUED and target.status != FileStatus.PROCESSING:
        raise InvalidStageTransition(f"{file_id}: stage {stage.value} requires status processing")
    return _replace_file(state, file_id, stage=stage, **extra)


def record_estimate(state: BatchState, file_id: str, count: int, seconds: int) -> BatchState:
    state = set_stage(
        state, file_id, ProcessingStage.SCANNING, estimatedTransactions=count, estimatedSeconds=seconds
    )
    return replace(state, total_estimated_seconds=state.total_estimated_seconds + seconds)


def complete_file(state: BatchState, file_id: str, transaction_count: int) -> BatchState:
    return set_stage(
        state,
        file_id,
        ProcessingStage.COMPLETE,
        status=FileStatus.COMPLETED,
        transactionCount=transaction_count,
    )


def fail_file(state: BatchState, file_id: str, message: str) -> BatchState:
    return set_stage(state, file_id, ProcessingStage.ERROR, status=FileStatus.ERROR, error=message)


def drain(state: BatchState) -> BatchState:
    return replace(state, phase=BatchPhase.DRAINED, current_index=None, started_at=None)


def reset_after_drain(state: BatchState) -> BatchState:
    files = tuple(f for f in state.files if f.status == FileStatus.PENDING)
    phase = BatchPhase.AWAITING_PASSWORD if files else BatchPhase.IDLE
    return replace(state, phase=phase, files=files, total_estimated_seconds=0)


# -- endpoint transports ----------------------------------------------------


class HttpEndpoints:
    """Talks to a running statement service over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        parser: Optional[str] = None,
        timeout: float = 180,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.parser = parser
        self.timeout = timeout
        self.session = session or requests.Session()

    async def count(self, upload: PendingUpload, password: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post, "/count", upload, password)

    async def upload(self, upload: PendingUpload, password: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post, "/upload", upload, password)

    def _post(self, path: str, upload: PendingUpload, password: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        data: Dict[str, str] = {}
        if password:
            data["password"] = password
        if self.parser and path == "/upload":
            data["parser"] = self.parser
        try:
            resp = self.session.post(
                self.base_url + path,
                headers=headers,
                files={"file": (upload.file_name, upload.content, "application/pdf")},
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise EndpointError(0, f"Request to {path} failed: {exc}", retryable=True) from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if resp.status_code >= 400:
            body = payload if isinstance(payload, dict) else {}
            raise EndpointError(
                resp.status_code,
                str(body.get("error") or f"HTTP {resp.status_code}"),
                needs_password=bool(body.get("needsPassword")),
            )
        if not isinstance(payload, dict):
            raise EndpointError(resp.status_code, f"Invalid response from {path}")
        if path == "/upload" and not isinstance(payload.get("transactions"), list):
            raise EndpointError(resp.status_code, f"Invalid response from {path}: no transactions list")
        return payload


class LocalEndpoints:
    """Runs the statement pipeline in-process instead of over HTTP."""

    def __init__(self, ai_client: Optional[StatementAIClient] = None, parser: Optional[str] = None) -> None:
        self.ai_client = ai_client or StatementAIClient()
        self.parser = parser

    async def count(self, upload: PendingUpload, password: str) -> Dict[str, Any]:
        try:
            result = await estimate_statement(upload.content, password or None, self.ai_client)
        except StatementError as exc:
            status = 401 if exc.needs_password else exc.status_code
            raise EndpointError(status, exc.message, exc.needs_password) from exc
        except Exception as exc:
            raise EndpointError(500, str(exc) or type(exc).__name__) from exc
        return count_response(result)

    async def upload(self, upload: PendingUpload, password: str) -> Dict[str, Any]:
        try:
            result = await process_statement(
                upload.content,
                password or None,
                statement_id=new_statement_id(),
                parser=self.parser,
                ai_client=self.ai_client,
            )
        except StatementError as exc:
            raise EndpointError(exc.status_code, exc.message, exc.needs_password) from exc
        except Exception as exc:
            raise EndpointError(500, str(exc) or type(exc).__name__) from exc
        return {
            "success": True,
            "fileName": upload.file_name,
            "transactionCount": len(result.transactions),
            "transactions": [t.model_dump() for t in result.transactions],
        }


# -- orchestrator -----------------------------------------------------------

Listener = Callable[[BatchState], None]
CompletionHandler = Callable[[List[Transaction]], Any]


class UploadOrchestrator:
    def __init__(
        self,
        endpoints: Any,
        on_complete: Optional[CompletionHandler] = None,
        profile_secret: Optional[Callable[[str], str]] = None,
        save_profile: Optional[Callable[[str, str], str]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        reset_delay: float = RESET_DELAY_SECONDS,
    ) -> None:
        self.endpoints = endpoints
        self.on_complete = on_complete
        self.profile_secret = profile_secret
        self.save_profile = save_profile
        self.reset_delay = reset_delay
        self._sleep = sleep
        self._clock = clock
        self._uploads: Dict[str, PendingUpload] = {}
        self._listeners: List[Listener] = []
        self.state = BatchState()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _apply(self, new_state: BatchState) -> None:
        self.state = new_state
        for listener in self._listeners:
            listener(new_state)

    def _stage(self, file_id: str, stage: ProcessingStage, **extra: Any) -> None:
        logger.debug("%s -> %s", file_id, stage.value)
        self._apply(set_stage(self.state, file_id, stage, **extra))

    @property
    def remaining_seconds(self) -> int:
        return self.state.remaining_seconds(self._clock())

    @property
    def elapsed_seconds(self) -> int:
        return self.state.elapsed_seconds(self._clock())

    def add_files(self, files: Sequence[Tuple[str, bytes]]) -> List[str]:
        entries: List[UploadedFile] = []
        for file_name, content in files:
            file_id = f"file-{uuid.uuid4().hex[:12]}"
            self._uploads[file_id] = PendingUpload(file_id, file_name, content)
            entries.append(UploadedFile(id=file_id, fileName=file_name))
        self._apply(add_files(self.state, entries))
        return [f.id for f in entries]

    def cancel_password_prompt(self) -> None:
        self._apply(cancel_prompt(self.state))
        kept = {f.id for f in self.state.files}
        self._uploads = {k: v for k, v in self._uploads.items() if k in kept}

    def remove_file(self, file_id: str) -> bool:
        before = self.state
        self._apply(remove_file(self.state, file_id))
        if self.state is before:
            return False
        self._uploads.pop(file_id, None)
        return True

    def retry_file(self, file_id: str) -> None:
        self._apply(requeue_file(self.state, file_id))

    def _password_for(self, file_id: str, choice: PasswordChoice) -> str:
        if choice.mode == "different":
            return choice.per_file.get(file_id, "")
        if choice.profile_id:
            if self.profile_secret is None:
                raise PasswordProfileError(PROFILE_NOT_FOUND)
            try:
                return self.profile_secret(choice.profile_id)
            except KeyError as exc:
                raise PasswordProfileError(PROFILE_NOT_FOUND) from exc
        return choice.password

    async def submit_passwords(self, choice: Optional[PasswordChoice] = None) -> List[Transaction]:
        """
        Close the password prompt and process every pending file in order.

        Returns the transactions of all files that succeeded; failed files keep
        their error on the batch state until it is reset.
        """
        choice = choice or PasswordChoice()
        if self.state.phase != BatchPhase.AWAITING_PASSWORD:
            raise RuntimeError(f"No files waiting for a password (phase={self.state.phase.value})")

        if choice.save_as_profile and choice.password and self.save_profile is not None:
            profile_id = self.save_profile(choice.save_as_profile, choice.password)
            choice = replace(choice, profile_id=profile_id)

        self._apply(start_batch(self.state, self._clock()))
        batch_ids = [f.id for f in self.state.files if f.status == FileStatus.PENDING]
        collected: List[Transaction] = []

        for index, file_id in enumerate(batch_ids):
            if self.state.file(file_id) is None:
                continue
            self._apply(begin_file(self.state, file_id, index))
            transactions, error = await self._process_with_retry(file_id, choice)
            if error is None:
                self._apply(complete_file(self.state, file_id, len(transactions)))
                collected.extend(transactions)
            else:
                logger.error("File %s failed: %s", file_id, error)
                self._apply(fail_file(self.state, file_id, error))

        self._apply(drain(self.state))
        if collected and self.on_complete is not None:
            outcome = self.on_complete(list(collected))
            if inspect.isawaitable(outcome):
                await outcome

        await self._sleep(self.reset_delay)
        self._apply(reset_after_drain(self.state))
        kept = {f.id for f in self.state.files}
        self._uploads = {k: v for k, v in self._uploads.items() if k in kept}
        return collected

    async def _process_with_retry(
        self, file_id: str, choice: PasswordChoice
    ) -> Tuple[List[Transaction], Optional[str]]:
        """Run one file to a result or a file-level error message; never raises."""
        upload = self._uploads.get(file_id)
        if upload is None:
            return [], "File not found"
        try:
            password = self._password_for(file_id, choice)
        except PasswordProfileError as exc:
            logger.warning("%s: profile %s not found", upload.file_name, choice.profile_id)
            return [], str(exc)
        except Exception as exc:
            logger.exception("Password lookup for %s failed", upload.file_name)
            return [], f"Password lookup failed: {exc}"

        for attempt in range(1, UPLOAD_MAX_ATTEMPTS + 1):
            try:
                return await self._process_once(upload, password), None
            except EndpointError as exc:
                if exc.retryable and attempt < UPLOAD_MAX_ATTEMPTS:
                    wait = upload_backoff(attempt)
                    logger.warning(
                        "Upload retry %d/%d for %s - waiting %.0fs: %s",
                        attempt, UPLOAD_MAX_ATTEMPTS, upload.file_name, wait, exc.message,
                    )
                    await self._sleep(wait)
                    continue
                return [], exc.message
            except ValidationError as exc:
                return [], f"Malformed transactions in response: {exc.error_count()} errors"
            except Exception as exc:
                logger.exception("Processing %s failed", upload.file_name)
                return [], str(exc) or type(exc).__name__
        return [], "Max retries exceeded"

    async def _process_once(self, upload: PendingUpload, password: str) -> List[Transaction]:
        file_id = upload.id
        self._stage(file_id, ProcessingStage.UPLOADING)
        if password:
            self._stage(file_id, ProcessingStage.DECRYPTING)

        self._stage(file_id, ProcessingStage.SCANNING)
        try:
            estimate = await self.endpoints.count(upload, password)
        except EndpointError as exc:
            logger.info("Count pre-flight for %s skipped: %s", upload.file_name, exc.message)
            estimate = {}
        except Exception as exc:
            logger.warning("Count pre-flight for %s failed: %s", upload.file_name, exc)
            estimate = {}
        count = int(estimate.get("count") or 0)
        already_estimated = self.state.file(file_id).estimatedSeconds is not None
        if estimate.get("success") and count > 0 and not already_estimated:
            self._apply(record_estimate(self.state, file_id, count, int(estimate.get("estimatedSeconds") or 0)))

        self._stage(file_id, ProcessingStage.EXTRACTING)
        payload = await self.endpoints.upload(upload, password)
        self._stage(file_id, ProcessingStage.ANALYZING)
        return [Transaction.model_validate(t) for t in payload.get("transactions") or []]

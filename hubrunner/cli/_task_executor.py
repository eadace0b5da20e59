"""Batch execution for hubrunner documents: model tasks first, then inference tasks."""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Iterator, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hubrunner.cache.hub import HubClient
from hubrunner.cache.references import RemoteArtifact, resolve_model_source, validate_repository_id
from hubrunner.cache.store import REMOVE_ALL, ArtifactCache
from hubrunner.errors import ConfigError, HubRunnerError, LocalIOError, NotFoundError
from hubrunner.inference import GenerationParams, InferenceRunner
from hubrunner.utils.download import ProgressCallback

from ._config_loader import apply_defaults
from ._schemas import BatchConfigSchema, InferenceTaskSchema, ModelTaskSchema

logger = logging.getLogger(__name__)

TaskKind = Literal["model", "inference"]
TaskStatus = Literal["succeeded", "failed", "skipped", "planned"]
ConfirmCallback = Callable[[str], bool]


class ExecutorSettings(BaseModel):
    """Run-level options controlling how a batch is executed."""

    cache_dir: Path | None = None
    output_dir: Path = Field(default_factory=Path.cwd)
    include: frozenset[str] | None = None
    exclude: frozenset[str] | None = None
    dry_run: bool = False
    continue_on_error: bool = False

    @field_validator("output_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Path | str) -> Path:
        return Path(value).expanduser()

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _expand_optional_path(cls, value: Path | str | None) -> Path | None:
        if value is None:
            return None
        return Path(value).expanduser()


class TaskExecutionResult(BaseModel):
    """Outcome emitted for each model or inference task."""

    kind: TaskKind
    index: int
    name: str
    status: TaskStatus
    error: str | None = None
    error_kind: str | None = None
    detail: str | None = None
    duration_seconds: float | None = None
    model_path: Path | None = None
    output_path: Path | None = None
    text: str | None = None
    result: Any | None = None


class BatchReport(BaseModel):
    """Structured result of one batch run."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    results: list[TaskExecutionResult] = Field(default_factory=list)
    aborted: bool = False
    dry_run: bool = False

    def count(self, status: TaskStatus, kind: TaskKind | None = None) -> int:
        return sum(1 for result in self.results if result.status == status and (kind is None or result.kind == kind))

    def for_kind(self, kind: TaskKind) -> list[TaskExecutionResult]:
        return [result for result in self.results if result.kind == kind]

    @property
    def succeeded(self) -> int:
        return self.count("succeeded")

    @property
    def failed(self) -> int:
        return self.count("failed")

    @property
    def skipped(self) -> int:
        return self.count("skipped")

    @property
    def planned(self) -> int:
        return self.count("planned")

    @property
    def ok(self) -> bool:
        return not self.aborted and self.failed == 0


def parse_name_filter(value: str | Sequence[str] | None) -> frozenset[str] | None:
    """Parse comma-separated task names (repeatable) into a set; empty input means no filter."""
    if value is None:
        return None
    chunks = [value] if isinstance(value, str) else list(value)
    names = {item.strip() for chunk in chunks if chunk for item in chunk.split(",") if item.strip()}
    return frozenset(names) or None


def task_selected(name: str, include: frozenset[str] | None, exclude: frozenset[str] | None) -> bool:
    if include is not None and name not in include:
        return False
    if exclude is not None and name in exclude:
        return False
    return True


def generation_params(task: InferenceTaskSchema) -> GenerationParams:
    return GenerationParams.from_optional(
        max_tokens=task.max_tokens,
        temperature=task.temperature,
        top_k=task.top_k,
        top_p=task.top_p,
        ctx_size=task.ctx_size,
        threads=task.threads,
    )


class _ExecutionContext:
    """Lazily creates one ArtifactCache per cache directory and a shared hub client."""

    def __init__(
        self,
        settings: ExecutorSettings,
        *,
        hub: HubClient | None,
        progress: ProgressCallback | None,
    ) -> None:
        self.settings = settings
        self.progress = progress
        self._hub = hub
        self._owns_hub = False
        self._caches: dict[Path | None, ArtifactCache] = {}

    @property
    def hub(self) -> HubClient:
        if self._hub is None:
            self._hub = HubClient()
            self._owns_hub = True
        return self._hub

    def cache_for(self, cache_dir: str | Path | None) -> ArtifactCache:
        directory = cache_dir if cache_dir else self.settings.cache_dir
        key = Path(directory).expanduser() if directory else None
        cache = self._caches.get(key)
        if cache is None:
            cache = ArtifactCache(key, hub=self.hub)
            self._caches[key] = cache
            logger.debug("Using cache directory %s", cache.base_dir)
        return cache

    def close(self) -> None:
        if self._owns_hub and self._hub is not None:
            self._hub.close()


@contextlib.contextmanager
def applied_environment(environment: Mapping[str, str]) -> Iterator[None]:
    """Export ``environment`` into ``os.environ`` for the duration of the block."""
    previous: dict[str, str | None] = {key: os.environ.get(key) for key in environment}
    os.environ.update(environment)
    try:
        yield
    finally:
        for key, value in previous.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def check_inference_tasks(
    tasks: Sequence[InferenceTaskSchema],
    include: frozenset[str] | None = None,
    exclude: frozenset[str] | None = None,
) -> None:
    """Reject selected tasks whose model reference cannot be resolved, before anything runs."""
    problems: list[str] = []
    for index, task in enumerate(tasks):
        if not task_selected(task.name, include, exclude):
            continue
        if not task.model or not task.model.strip():
            problems.append(f"tasks[{index}] ('{task.name}'): no model set on the task or in defaults")
            continue
        source = resolve_model_source(task.model_source, filename=task.hf_filename)
        if source == "hub":
            try:
                validate_repository_id(task.model)
            except ValueError as exc:
                problems.append(f"tasks[{index}] ('{task.name}'): {exc}")
    if problems:
        raise ConfigError("Invalid inference tasks:\n  " + "\n  ".join(problems), problems=problems)


def execute_batch(
    config: BatchConfigSchema,
    settings: ExecutorSettings,
    *,
    runner: InferenceRunner,
    hub: HubClient | None = None,
    confirm: ConfirmCallback | None = None,
    progress: ProgressCallback | None = None,
) -> BatchReport:
    """Run every model task, then every selected inference task, in declaration order.

    A failed task aborts the rest of the run unless continue-on-error applies:
    the task's own ``continue_on_error`` when set, otherwise the batch policy
    (``settings.continue_on_error`` or the document's ``continue_on_error``).
    Dry runs never touch the cache, the hub or the runner.
    """
    merged_tasks = [apply_defaults(task, config.defaults) for task in config.tasks]
    check_inference_tasks(merged_tasks, settings.include, settings.exclude)

    continue_default = settings.continue_on_error or config.continue_on_error
    default_cache_dir = config.defaults.cache_dir if config.defaults else None
    context = _ExecutionContext(settings, hub=hub, progress=progress)
    results: list[TaskExecutionResult] = []
    aborted = False

    logger.info(
        "Starting batch '%s' with %d model task(s) and %d inference task(s)%s.",
        config.name or "unnamed",
        len(config.models),
        len(merged_tasks),
        " (dry run)" if settings.dry_run else "",
    )

    with applied_environment(config.environment):
        try:
            for index, model_task in enumerate(config.models):
                logger.info("Model task %d/%d: %s", index + 1, len(config.models), _model_task_label(model_task))
                result = _run_model_task(index, model_task, context, default_cache_dir=default_cache_dir, confirm=confirm)
                results.append(result)
                if result.status == "failed" and not continue_default:
                    logger.error("Aborting batch: model task %d failed and continue-on-error is disabled.", index)
                    aborted = True
                    break

            if not aborted:
                for index, task in enumerate(merged_tasks):
                    if not task_selected(task.name, settings.include, settings.exclude):
                        logger.debug("Skipping task '%s' (filtered out).", task.name)
                        results.append(
                            TaskExecutionResult(
                                kind="inference", index=index, name=task.name, status="skipped", detail="filtered out"
                            )
                        )
                        continue
                    logger.info("Inference task %d/%d: %s", index + 1, len(merged_tasks), task.name)
                    result = _run_inference_task(index, task, context, runner=runner)
                    results.append(result)
                    if result.status == "failed" and not _continue_after(task, continue_default):
                        logger.error("Aborting batch: task '%s' failed and continue-on-error is disabled.", task.name)
                        aborted = True
                        break
        finally:
            context.close()

    return BatchReport(name=config.name, results=results, aborted=aborted, dry_run=settings.dry_run)


def _continue_after(task: InferenceTaskSchema, batch_default: bool) -> bool:
    if task.continue_on_error is not None:
        return task.continue_on_error
    return batch_default


def _model_task_label(task: ModelTaskSchema) -> str:
    parts = [task.action]
    if task.model_id:
        parts.append(task.model_id if not task.filename else f"{task.model_id}:{task.filename}")
    return " ".join(parts)


def _failure(
    kind: TaskKind,
    index: int,
    name: str,
    exc: BaseException,
    *,
    start: float,
) -> TaskExecutionResult:
    error_kind = exc.kind if isinstance(exc, HubRunnerError) else "unexpected"
    return TaskExecutionResult(
        kind=kind,
        index=index,
        name=name,
        status="failed",
        error=str(exc) or type(exc).__name__,
        error_kind=error_kind,
        duration_seconds=perf_counter() - start,
    )


def _run_model_task(
    index: int,
    task: ModelTaskSchema,
    context: _ExecutionContext,
    *,
    default_cache_dir: str | None,
    confirm: ConfirmCallback | None,
) -> TaskExecutionResult:
    name = _model_task_label(task)
    if context.settings.dry_run:
        detail = f"would {name}" + (" (force)" if task.force else "")
        logger.info("Dry run: %s", detail)
        return TaskExecutionResult(kind="model", index=index, name=name, status="planned", detail=detail)

    start = perf_counter()
    try:
        cache = context.cache_for(task.cache_dir or default_cache_dir)
        if task.action == "pull":
            ref = cache.remote_artifact(task.model_id or "", task.filename)
            path = cache.ensure(ref, task.force, expected_sha256=task.sha256, progress=context.progress)
            return TaskExecutionResult(
                kind="model",
                index=index,
                name=name,
                status="succeeded",
                detail=f"{ref.label} -> {path}",
                model_path=path,
                duration_seconds=perf_counter() - start,
            )
        if task.action == "remove":
            target = task.model_id or ""
            if not task.force and confirm is not None:
                prompt = (
                    f"Remove ALL cached models under {cache.base_dir}?"
                    if target == REMOVE_ALL
                    else f"Remove cached model '{target}'?"
                )
                if not confirm(prompt):
                    logger.info("Removal of '%s' not confirmed; skipping.", target)
                    return TaskExecutionResult(
                        kind="model", index=index, name=name, status="skipped", detail="removal not confirmed"
                    )
            freed = cache.remove(target)
            return TaskExecutionResult(
                kind="model",
                index=index,
                name=name,
                status="succeeded",
                detail=f"removed {target} ({freed} bytes)",
                result=freed,
                duration_seconds=perf_counter() - start,
            )
        if task.action == "list":
            entries = cache.list()
            return TaskExecutionResult(
                kind="model",
                index=index,
                name=name,
                status="succeeded",
                detail=f"{len(entries)} model(s) cached in {cache.base_dir}",
                result=entries,
                duration_seconds=perf_counter() - start,
            )
        usage = cache.usage()
        return TaskExecutionResult(
            kind="model",
            index=index,
            name=name,
            status="succeeded",
            detail=f"{usage.total_bytes} bytes across {len(usage.entries)} model(s)",
            result=usage,
            duration_seconds=perf_counter() - start,
        )
    except HubRunnerError as exc:
        logger.error("Model task %d (%s) failed [%s]: %s", index, name, exc.kind, exc)
        return _failure("model", index, name, exc, start=start)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Model task %d (%s) failed unexpectedly: %s", index, name, exc)
        return _failure("model", index, name, exc, start=start)


def _describe_inference_plan(task: InferenceTaskSchema) -> str:
    params = generation_params(task)
    source = resolve_model_source(task.model_source, filename=task.hf_filename)
    if source == "hub":
        model = f"{task.model}:{task.hf_filename or '<first .gguf>'}"
    else:
        model = str(task.model)
    detail = (
        f"model={model} ({source}) max_tokens={params.max_tokens} temperature={params.temperature} "
        f"top_k={params.top_k} top_p={params.top_p} ctx_size={params.ctx_size}"
    )
    if task.output_file:
        detail += f" output_file={task.output_file}"
    return detail


def _resolve_model_path(task: InferenceTaskSchema, context: _ExecutionContext) -> Path:
    model = task.model or ""
    source = resolve_model_source(task.model_source, filename=task.hf_filename)
    if source == "local":
        path = Path(model).expanduser()
        if not path.is_file():
            raise NotFoundError(f"Local model file not found: {path}")
        return path
    cache = context.cache_for(task.cache_dir)
    ref: RemoteArtifact = cache.remote_artifact(model, task.hf_filename)
    return cache.ensure(ref, task.force_download, expected_sha256=task.sha256, progress=context.progress)


def _write_output(output_dir: Path, output_file: str, text: str) -> Path:
    target = Path(output_file).expanduser()
    if not target.is_absolute():
        target = output_dir / target
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise LocalIOError(f"Failed to write output file {target}: {exc}") from exc
    return target


def _run_inference_task(
    index: int,
    task: InferenceTaskSchema,
    context: _ExecutionContext,
    *,
    runner: InferenceRunner,
) -> TaskExecutionResult:
    if context.settings.dry_run:
        detail = _describe_inference_plan(task)
        logger.info("Dry run: task '%s' %s", task.name, detail)
        return TaskExecutionResult(kind="inference", index=index, name=task.name, status="planned", detail=detail)

    start = perf_counter()
    try:
        model_path = _resolve_model_path(task, context)
        params = generation_params(task)
        if task.verbose:
            logger.info("Task '%s' using %s with %s", task.name, model_path, params)
        generation_start = perf_counter()
        text = runner.run(model_path, task.prompt, params)
        generation_seconds = perf_counter() - generation_start
        output_path = _write_output(context.settings.output_dir, task.output_file, text) if task.output_file else None
    except HubRunnerError as exc:
        logger.error("Task '%s' failed [%s]: %s", task.name, exc.kind, exc)
        return _failure("inference", index, task.name, exc, start=start)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Task '%s' failed unexpectedly: %s", task.name, exc)
        return _failure("inference", index, task.name, exc, start=start)

    if task.stats:
        words = len(text.split())
        rate = words / generation_seconds if generation_seconds > 0 else 0.0
        logger.info(
            "Task '%s' stats: %d words in %.2fs (%.2f words/sec).", task.name, words, generation_seconds, rate
        )
    return TaskExecutionResult(
        kind="inference",
        index=index,
        name=task.name,
        status="succeeded",
        detail=str(output_path) if output_path else None,
        duration_seconds=perf_counter() - start,
        model_path=model_path,
        output_path=output_path,
        text=text,
    )


__all__ = [
    "BatchReport",
    "ExecutorSettings",
    "TaskExecutionResult",
    "applied_environment",
    "check_inference_tasks",
    "execute_batch",
    "generation_params",
    "parse_name_filter",
    "task_selected",
]

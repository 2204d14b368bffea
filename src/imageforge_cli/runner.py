from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .cache import sha256_bytes
from .check import evaluate_image
from .codec import Codec, EncodeRequest, PillowCodec
from .discovery import MetadataReader, SourceDescriptor, describe_source, discover_images, relative_posix
from .errors import (
    CacheStoreError,
    CodecError,
    ImageForgeError,
    InputValidationError,
    MetadataError,
    OwnershipConflictError,
)
from .manifest import ManifestBuilder, ProducedOutput, build_entry, write_manifest
from .metadata import read_image_metadata
from .plan import BatchPlan, ImagePlan, plan_batch
from .reporting import (
    DEFAULT_OUTPUT,
    RunError,
    RunImageReport,
    RunReport,
    build_rerun_command,
    default_concurrency,
    display_path,
)
from .schema import CacheMode, Manifest, ManifestEntry, ProcessOptions, SourceIdentity
from .store import CACHE_FILE, CacheLock, CacheStore, JsonFileCacheStore
from .version import __version__

logger = logging.getLogger(__name__)

ImageCallback = Callable[[RunImageReport], None]


@dataclass
class RunOptions:
    input_dir: Path
    process: ProcessOptions
    output: Path = Path(DEFAULT_OUTPUT)
    out_dir: Optional[Path] = None
    cache: CacheMode = "on"
    force_overwrite: bool = False
    check: bool = False
    dry_run: bool = False
    concurrency: int = field(default_factory=default_concurrency)
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    source_identity: SourceIdentity = "content"

    @property
    def evaluate_only(self) -> bool:
        return self.check or self.dry_run

    @property
    def output_dir(self) -> Path:
        return self.out_dir if self.out_dir is not None else self.input_dir

    @property
    def cache_path(self) -> Path:
        return self.output_dir / CACHE_FILE


@dataclass
class RunResult:
    exit_code: int
    report: RunReport
    manifest: Optional[Manifest] = None
    manifest_path: Optional[Path] = None


@dataclass
class _Outcome:
    report: RunImageReport
    entry: Optional[ManifestEntry] = None


def validate_run_options(options: RunOptions) -> None:
    if options.check and options.dry_run:
        raise InputValidationError("--check and --dry-run cannot be used together.")
    if not options.input_dir.is_dir():
        raise InputValidationError(f"Input directory does not exist: {options.input_dir}")
    if options.concurrency < 1:
        raise InputValidationError(f"Invalid concurrency {options.concurrency}: must be at least 1.")


def _failure(source: str, error: ImageForgeError, original_size: int = 0) -> RunImageReport:
    return RunImageReport(
        file=source,
        status="failed",
        original_size=original_size,
        reason=str(error),
        error=RunError(code=error.code, message=str(error), file=source),
    )


def _describe_all(
    paths: list[Path],
    options: RunOptions,
    read_metadata: MetadataReader,
    pool: ThreadPoolExecutor,
) -> tuple[list[SourceDescriptor], list[RunImageReport]]:
    def describe(path: Path) -> SourceDescriptor | RunImageReport:
        try:
            return describe_source(path, options.input_dir, options.source_identity, read_metadata)
        except MetadataError as e:
            return _failure(relative_posix(path, options.input_dir), e)
        except OSError as e:
            return _failure(relative_posix(path, options.input_dir), MetadataError(f"{path.name}: {e}"))

    sources: list[SourceDescriptor] = []
    failures: list[RunImageReport] = []
    for item in pool.map(describe, paths):
        if isinstance(item, RunImageReport):
            logger.warning(f"Skipping {item.file}: {item.reason}")
            failures.append(item)
        else:
            sources.append(item)
    return sources, failures


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def _ownership_conflict(plan: ImagePlan, options: RunOptions, store: CacheStore) -> Optional[_Outcome]:
    """Check every planned path before the first write; nothing is written here."""
    if options.force_overwrite:
        return None
    try:
        for out in plan.all_outputs():
            store.verify_ownership(out.path, out.full_path, plan.source.relative_path)
    except OwnershipConflictError as e:
        logger.error(str(e))
        return _Outcome(_failure(plan.source.relative_path, e, plan.source.size))
    return None


def _generate(
    plan: ImagePlan,
    options: RunOptions,
    codec: Codec,
    store: CacheStore,
) -> _Outcome:
    """Encode every planned output of one image and record the result."""
    source = plan.source.relative_path
    process = options.process

    conflict = _ownership_conflict(plan, options, store)
    if conflict is not None:
        return conflict

    created: list[Path] = []
    produced: list[ProducedOutput] = []
    try:
        blur_data_url = ""
        if process.blur:
            blur_data_url = codec.blur_placeholder(plan.source.path, process.blur_size)
        for out in plan.all_outputs():
            data = codec.encode(
                plan.source.path,
                EncodeRequest(format=out.format, quality=process.quality, width=out.width, height=out.height),
            )
            existed = out.full_path.exists()
            _write_atomic(out.full_path, data)
            if not existed:
                created.append(out.full_path)
            produced.append(
                ProducedOutput(
                    format=out.format,
                    width=out.width,
                    height=out.height,
                    path=out.path,
                    size=len(data),
                    digest=sha256_bytes(data),
                )
            )
    except Exception as e:
        for path in created:
            path.unlink(missing_ok=True)
        if isinstance(e, CodecError):
            error = e
        elif isinstance(e, OSError):
            error = CodecError(f"{source}: write failed: {e}")
        else:
            error = CodecError(f"{source}: processing failed: {e}")
        logger.error(f"Failed {source}: {error}")
        return _Outcome(_failure(source, error, plan.source.size))

    entry = build_entry(plan, produced, blur_data_url)
    if options.cache == "on":
        store.record(plan.fingerprint, source, entry, {p.path: p.digest for p in produced if p.digest})

    logger.info(f"Processed {source} ({len(produced)} outputs)")
    return _Outcome(
        RunImageReport(
            file=source,
            status="processed",
            fingerprint=plan.fingerprint,
            original_size=plan.source.size,
            processed_size=entry.processed_size(),
            outputs=sorted(entry.output_paths()),
        ),
        entry,
    )


def process_image(
    plan: ImagePlan,
    options: RunOptions,
    codec: Codec,
    store: CacheStore,
) -> _Outcome:
    source = plan.source.relative_path
    check = evaluate_image(plan, store, options.input_dir, use_cache=options.cache != "off")

    if check.hit and check.record is not None:
        entry = check.record.entry
        logger.debug(f"Cache hit {source}")
        return _Outcome(
            RunImageReport(
                file=source,
                status="cached",
                fingerprint=plan.fingerprint,
                original_size=plan.source.size,
                processed_size=entry.processed_size(),
                outputs=sorted(entry.output_paths()),
            ),
            entry,
        )

    if options.evaluate_only:
        conflict = _ownership_conflict(plan, options, store)
        if conflict is not None:
            return conflict
        return _Outcome(
            RunImageReport(
                file=source,
                status="needs-processing",
                fingerprint=plan.fingerprint,
                original_size=plan.source.size,
                outputs=sorted(o.path for o in plan.all_outputs()),
                reason=check.reason,
            )
        )

    return _generate(plan, options, codec, store)


def _new_report(options: RunOptions) -> RunReport:
    return RunReport(
        version=__version__,
        check=options.check,
        dry_run=options.dry_run,
        input_dir=display_path(options.input_dir),
        output_dir=display_path(options.output_dir),
        manifest_path=display_path(options.output),
        cache_path=display_path(options.cache_path),
        options=options.process.model_dump(mode="json"),
        rerun_command=build_rerun_command(
            display_path(options.input_dir),
            options.process,
            output=display_path(options.output),
            concurrency=options.concurrency,
            cache=options.cache,
            force_overwrite=options.force_overwrite,
            include=options.include,
            exclude=options.exclude,
            out_dir=display_path(options.out_dir) if options.out_dir is not None else None,
        ),
    )


def run_imageforge(
    options: RunOptions,
    codec: Optional[Codec] = None,
    store: Optional[CacheStore] = None,
    read_metadata: MetadataReader = read_image_metadata,
    on_image: Optional[ImageCallback] = None,
) -> RunResult:
    """Plan, evaluate and (unless checking) generate outputs for a directory.

    Whole-batch problems (invalid input, output collisions, lock timeouts)
    raise before anything is written. Per-image failures are collected in
    the report and the manifest while sibling images continue.
    """
    validate_run_options(options)
    started = time.monotonic()
    codec = codec or PillowCodec()
    report = _new_report(options)

    paths = discover_images(options.input_dir, options.include, options.exclude)
    logger.debug(f"Discovered {len(paths)} images under {options.input_dir}")

    lock: Optional[CacheLock] = None
    if not options.evaluate_only and options.cache == "on":
        lock = CacheLock(options.cache_path.with_name(options.cache_path.name + ".lock"))
        lock.acquire()

    builder = ManifestBuilder()
    outcomes: list[_Outcome] = []
    save_error: Optional[CacheStoreError] = None
    try:
        # Loaded under the lock so records saved by a concurrent run are kept.
        if store is None:
            store = JsonFileCacheStore.load(options.cache_path)
        with ThreadPoolExecutor(max_workers=options.concurrency) as pool:
            sources, failures = _describe_all(paths, options, read_metadata, pool)
            outcomes.extend(_Outcome(f) for f in failures)

            batch: BatchPlan = plan_batch(sources, options.process, options.input_dir, options.output_dir)

            if not options.evaluate_only and options.cache == "on":
                pruned = store.prune(relative_posix(p, options.input_dir) for p in paths)
                if pruned:
                    logger.info(f"Pruned {pruned} stale cache records")

            futures = [pool.submit(process_image, plan, options, codec, store) for plan in batch.images]
            for future in futures:
                outcome = future.result()
                if on_image is not None:
                    on_image(outcome.report)
                outcomes.append(outcome)
    finally:
        try:
            if store is not None and store.dirty and options.cache == "on" and not options.evaluate_only:
                store.save()
        except CacheStoreError as e:
            logger.error(str(e))
            save_error = e
        finally:
            if lock is not None:
                lock.release()

    for outcome in sorted(outcomes, key=lambda o: o.report.file):
        report.add(outcome.report)
        if outcome.entry is not None:
            builder.add(outcome.report.file, outcome.entry)
        elif outcome.report.error is not None:
            builder.add_error(outcome.report.file, outcome.report.error.message)
    if save_error is not None:
        report.errors.append(RunError(code=save_error.code, message=str(save_error)))

    manifest: Optional[Manifest] = None
    manifest_path: Optional[Path] = None
    if not options.evaluate_only:
        manifest = builder.build()
        manifest_path = write_manifest(manifest, options.output)

    report.summary.duration_ms = int((time.monotonic() - started) * 1000)
    return RunResult(
        exit_code=_exit_code(options, report),
        report=report,
        manifest=manifest,
        manifest_path=manifest_path,
    )


def _exit_code(options: RunOptions, report: RunReport) -> int:
    if report.summary.failed or report.errors:
        return 1
    if options.check and report.summary.needs_processing:
        return 1
    return 0

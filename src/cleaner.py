import asyncio
import logging
from datetime import datetime
from pathlib import Path

from src.config import Config, Job
from src.git import GitError, GitRepository
from src.models import CleanupResult, Image, Reference, ReferenceInfo, WorkMode
from src.policy import apply_limit, get_references_to_scan
from src.storage import ImagesStorage
from src.utils import make_reference_info, true_utcnow

repository_locks: dict[Path, asyncio.Lock] = {}


def repository_lock(path: Path) -> asyncio.Lock:
    return repository_locks.setdefault(path.resolve(), asyncio.Lock())


def group_by_commit(images: list[Image]) -> dict[str, list[Image]]:
    grouped: dict[str, list[Image]] = {}
    for image in images:
        grouped.setdefault(image.commit, []).append(image)
    return grouped


def images_to_keep(
    repository: GitRepository,
    reference: Reference,
    images_by_commit: dict[str, list[Image]],
    now: datetime | None = None,
) -> list[Image]:
    history = repository.history(
        reference.head_commit.hash, reference.scan_depth_limit
    )
    found = [
        image for commit in history for image in images_by_commit.get(commit, [])
    ]
    return apply_limit(found, reference.images_cleanup_keep_policy, now)


def plan_cleanup(
    repository: GitRepository,
    references: list[Reference],
    images: list[Image],
    now: datetime | None = None,
) -> tuple[list[Image], list[Image], list[ReferenceInfo]]:
    images_by_commit = group_by_commit(images)
    kept: set[str] = set()
    stats = []
    for reference in references:
        keep = images_to_keep(repository, reference, images_by_commit, now)
        kept.update(image.key for image in keep)
        stats.append(make_reference_info(reference, keep))

    to_delete = [image for image in images if image.key not in kept]
    to_save = [image for image in images if image.key in kept]
    return to_delete, to_save, stats


def scan_project(
    job: Job, config: Config, now: datetime | None = None
) -> tuple[list[Image], list[Image], list[ReferenceInfo], list[str]]:
    repository = GitRepository(job.repository, config.git_binary)
    references = get_references_to_scan(
        repository, job.keep_policies, config.remote_for(job), now
    )
    logging.info(
        f"Job '{job.name}': {len(references)} references to scan: "
        f"{', '.join(str(ref) for ref in references)}"
    )

    images, errors = ImagesStorage(job.storage).images()
    to_delete, to_save, stats = plan_cleanup(repository, references, images, now)
    return to_delete, to_save, stats, errors


async def delete_all_images(
    storage: ImagesStorage, images: list[Image]
) -> list[str]:
    errors_total = []
    deletion_tasks: list[asyncio.Task[list[str]]] = []
    for image in images:
        deletion_tasks.append(
            asyncio.create_task(asyncio.to_thread(storage.delete, image))
        )
    for completed_task in asyncio.as_completed(deletion_tasks):
        errors_total.extend(await completed_task)
    return errors_total


def failed_result(
    job: Job, mode: WorkMode, started_at: datetime, error: str
) -> CleanupResult:
    logging.critical(error)
    return CleanupResult(
        job_name=job.name,
        mode=mode,
        started_at=started_at,
        finished_at=true_utcnow(),
        success=False,
        errors=[error],
        references=[],
        images_total_count=0,
        images_to_delete=[],
        images_to_delete_count=0,
        images_saved_count=0,
    )


async def cleanup_project(
    job: Job, config: Config, limiter: asyncio.Semaphore
) -> CleanupResult:
    started_at = true_utcnow()
    mode = WorkMode.AUTO if config.args.watch else WorkMode.MANUAL
    errors_total: list[str] = []

    async with limiter, repository_lock(job.repository):
        try:
            to_delete, to_save, stats, errors = await asyncio.to_thread(
                scan_project, job, config
            )
        except GitError as err:
            return failed_result(
                job,
                mode,
                started_at,
                f"Error scanning references of {job.repository}. Info: {err}",
            )
        except Exception as err:
            return failed_result(
                job, mode, started_at, f"Error when cleaning job '{job.name}'. Info: {err}"
            )
        errors_total.extend(errors)

        if config.args.debug:
            logging.warning(
                f"Job '{job.name}': debug mode, {len(to_delete)} images would be deleted"
            )
        else:
            errors_total.extend(
                await delete_all_images(ImagesStorage(job.storage), to_delete)
            )

    return CleanupResult(
        job_name=job.name,
        mode=mode,
        started_at=started_at,
        finished_at=true_utcnow(),
        success=True,
        errors=errors_total,
        references=stats,
        images_total_count=len(to_delete) + len(to_save),
        images_to_delete=[{image.id: image.created_at} for image in to_delete],
        images_to_delete_count=len(to_delete),
        images_saved_count=len(to_save),
    )

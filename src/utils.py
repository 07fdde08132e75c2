import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from logging import LogRecord
from pathlib import Path

from pydantic import ValidationError

from src.config import LOG_FORMAT, Config, Job
from src.models import CleanupResult, Image, Reference, ReferenceInfo, WorkMode

files_lock = asyncio.Lock()


class Colors(StrEnum):
    RED = "\033[31m"
    CRED = "\033[91m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *args, **kwargs) -> None:
        self.format_ = fmt
        self.FORMATS = {
            logging.WARNING: f"{Colors.YELLOW}{self.format_}{Colors.RESET}",
            logging.ERROR: f"{Colors.RED}{self.format_}{Colors.RESET}",
            logging.CRITICAL: f"{Colors.CRED}{self.format_}{Colors.RESET}",
        }
        super().__init__(fmt, *args, **kwargs)

    def format(self, record: LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.format_)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def init_logger(config: Config, path: Path | None = None) -> None:
    path = path or Path("logs/cleaner.log")
    path.parent.mkdir(parents=True, exist_ok=True)

    git_logger = logging.getLogger("src.git")
    if config.args.git_logs:
        git_logger.setLevel(logging.DEBUG)
    else:
        git_logger.disabled = True

    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    logging.basicConfig(
        level=logging.INFO, handlers=[file_handler, stream_handler], force=True
    )


async def write_history(msg: str, config: Config) -> None:
    async with files_lock:
        with open(config.files.history, "a") as f:
            f.write(f"[{true_utcnow()}] {msg}\n")


async def update_latest_cleanup(results: CleanupResult, config: Config) -> None:
    info = {}
    async with files_lock:
        with open(config.files.last_clean, "r") as f:
            try:
                info = json.load(f)
            except json.decoder.JSONDecodeError as err:
                logging.warning(
                    f"An error occurred while parsing the latest report: {err}. Seems it was blank"
                )
        with open(config.files.last_clean, "w") as f:
            info[results.job_name] = results.model_dump()
            json.dump(info, f, indent=4, default=str)


def hours_and_minutes_until_next_scan(
    previous_scan_time: datetime, scan_interval_hours: int
) -> str:
    next_scan_time = previous_scan_time + timedelta(hours=scan_interval_hours)
    time_difference = next_scan_time - true_utcnow()
    total_seconds = time_difference.total_seconds()
    hours_until_scan = int(total_seconds // 3600)
    minutes_until_scan = int((total_seconds % 3600) // 60)
    return f"{hours_until_scan} h. {minutes_until_scan} min."


def is_job_ready(job: Job, config: Config) -> tuple[bool, str]:
    report: CleanupResult | None = None
    with open(config.files.last_clean, "r") as f:
        try:
            if last_scans := json.load(f):
                last_scan = last_scans.get(job.name, {})
                if not last_scan:
                    return True, ""
                report = CleanupResult(**last_scan)
                if report.mode == WorkMode.MANUAL:
                    return True, ""
            if not report:
                return True, ""
        except (json.decoder.JSONDecodeError, IndexError):
            return True, ""
        except ValidationError as err:
            logging.error(f"An error occurred while parsing the latest report: {err}")
            return True, ""
    if (
        report.finished_at + timedelta(hours=job.clean_every_n_hours)
    ) <= true_utcnow() or not report.success:
        return True, ""
    return False, hours_and_minutes_until_next_scan(
        report.finished_at, job.clean_every_n_hours
    )


def true_utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def check_job_names(config: Config) -> None:
    names = [job.name for job in config.jobs]
    if len(set(names)) != len(names):
        logging.critical("Job names must be unique")
        sys.exit(1)


def make_reference_info(reference: Reference, kept: list[Image]) -> ReferenceInfo:
    return ReferenceInfo(
        name=str(reference),
        scan_depth_limit=reference.scan_depth_limit,
        images_kept=[image.id for image in kept],
        images_kept_count=len(kept),
    )

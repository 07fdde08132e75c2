import logging
import os
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from yaml import safe_load

from src.models import KeepPolicy

CACHE_DIR = Path("cache")
MAX_CONCURRENT_JOBS = 4
DEFAULT_REMOTE = "origin"
LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] |> %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def resolve_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("__ENV:"):
        return os.environ.get(value[6:].strip(), "")
    return value


class Job(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str | None = None
    repository: Path
    storage: Path
    remote: str | None = None
    clean_every_n_hours: int = 0
    keep_policies: list[KeepPolicy] = []

    @field_validator("repository", "storage", mode="before")
    @classmethod
    def handle_env_vars(cls, v: Any) -> Any:
        value = resolve_env(v)
        if not value:
            logging.critical(
                "In some jobs, repository or storage path is empty. "
                "Use '<field>: path' or env vars as '<field>: \"__ENV: <YOUR_VAR_NAME>\"'"
            )
            exit(1)
        return value

    @field_validator("keep_policies", mode="before")
    @classmethod
    def log_default_policies(cls, value: Any) -> Any:
        if not value:
            logging.info("No keep policies declared, default policies will be used")
            return []
        return value


class CacheFiles(BaseModel):
    last_clean: Path
    history: Path

    @classmethod
    def create(cls) -> "CacheFiles":
        latest = CACHE_DIR / Path("latest_cleanup.json")
        history = CACHE_DIR / Path("history.log")
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        latest.touch(exist_ok=True)
        history.touch(exist_ok=True)
        return cls(last_clean=latest, history=history)


class Args(BaseModel):
    debug: bool = False
    watch: bool = False
    jobs: list[str] | None = None
    git_logs: bool = False

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> "Args":
        parser = ArgumentParser(
            description="Cleaner of built images that are no longer needed by git references",
            formatter_class=ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "--debug",
            action="store_true",
            help="The application will generate logs without actually deleting the images",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--watch",
            action="store_true",
            help="Endless operation of the application for auto cleanup. Will be used 'jobs.yaml'",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--jobs",
            help="List of jobs in `manual.yaml` to run. Example: --jobs frontend backend",
            required=False,
            default=None,
            nargs="+",
        )
        parser.add_argument(
            "--git-logs",
            action="store_true",
            help="Log every git command",
            required=False,
            default=False,
        )
        args = parser.parse_args(argv)
        if args.jobs and args.watch:
            logging.critical(
                "Args 'watch' and 'jobs' are mutually exclusive. Please use one of them"
            )
            parser.print_help()
            exit(1)

        return cls(
            debug=args.debug,
            watch=args.watch,
            jobs=args.jobs,
            git_logs=args.git_logs,
        )


class Config(BaseModel):
    remote: str = DEFAULT_REMOTE
    git_binary: str = "git"
    max_concurrent_jobs: int = MAX_CONCURRENT_JOBS
    jobs: list[Job]
    files: CacheFiles
    args: Args

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Config":
        return Config.model_validate(data)

    @field_validator("remote")
    @classmethod
    def strip_remote(cls, value: str) -> str:
        value = value.strip().strip("/")
        if not value:
            logging.error(f"Remote must not be empty. Set '{DEFAULT_REMOTE}'")
            return DEFAULT_REMOTE
        return value

    @field_validator("max_concurrent_jobs")
    @classmethod
    def set_max_concurrent_jobs(cls, value: int) -> int:
        if value <= 0:
            logging.error(
                f"Max_concurrent_jobs must be greater than 0. Set {MAX_CONCURRENT_JOBS}"
            )
            return MAX_CONCURRENT_JOBS
        return value

    def remote_for(self, job: Job) -> str:
        return job.remote or self.remote


def get_config_files(args: Args, path: str = "") -> dict[str, str]:
    """Get config file names based on args."""
    path = path if path else "config"
    files = {}
    jobs_filename = "jobs" if args.watch else "manual"

    for ext in ("yml", "yaml"):
        config_file = f"{path}/config.{ext}"
        jobs_file = f"{path}/{jobs_filename}.{ext}"

        if Path(config_file).exists():
            files["config"] = config_file
        if Path(jobs_file).exists():
            files["jobs"] = jobs_file

    if len(files) != 2:
        logging.critical(
            f"Missing config files. Ensure you have config/config.yaml and config/{jobs_filename}.yaml"
        )
        exit(1)

    return files


def load_config(args: Args, path: str = "") -> Config:
    files = get_config_files(args, path)

    with open(files["config"], "r") as conf_file, open(files["jobs"], "r") as jobs_file:
        config = safe_load(conf_file) or {}
        jobs = safe_load(jobs_file) or []

    if args.jobs:
        validate_jobs(jobs, args.jobs)
        jobs = [job for job in jobs if job["name"] in args.jobs]

    if args.jobs or not args.watch:
        disable_periodic_clean(jobs)

    try:
        cache_files = CacheFiles.create()
        return Config.from_dict(
            {**config, "jobs": jobs, "args": args, "files": cache_files}
        )
    except ValidationError as e:
        logging.critical(f"Invalid config: {e}")
        exit(1)


def validate_jobs(jobs: list[dict], job_names: list[str]):
    missing = set(job_names) - {j["name"] for j in jobs}
    if missing:
        logging.critical(f"Missing jobs: {missing}")
        exit(1)


def disable_periodic_clean(jobs: list[dict[str, Any]]) -> None:
    for job in jobs:
        logging.info(f"Periodic cleanup disabled for job {job['name']}")
        job["clean_every_n_hours"] = 0

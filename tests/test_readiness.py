import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from src.config import Args, CacheFiles, Config, Job
from src.models import CleanupResult, WorkMode
from src.utils import (
    check_job_names,
    is_job_ready,
    true_utcnow,
    update_latest_cleanup,
    write_history,
)


def make_config(tmp_path: Path, clean_every_n_hours: int = 12) -> tuple[Job, Config]:
    files = CacheFiles(
        last_clean=tmp_path / "last_clean.json",
        history=tmp_path / "history.log",
    )
    files.last_clean.touch()
    files.history.touch()
    job = Job(
        name="test_job",
        repository="/srv/git/repo",
        storage="/srv/images/repo",
        clean_every_n_hours=clean_every_n_hours,
    )
    config = Config(
        jobs=[job],
        files=files,
        args=Args(debug=False, watch=True, jobs=None, git_logs=False),
    )
    return job, config


def make_report(hours_ago: int, mode: str = "auto", success: bool = True) -> dict:
    return {
        "job_name": "test_job",
        "finished_at": str(true_utcnow() - timedelta(hours=hours_ago)),
        "started_at": str(true_utcnow() - timedelta(hours=hours_ago)),
        "success": success,
        "errors": [],
        "mode": mode,
        "references": [],
        "images_total_count": 0,
        "images_to_delete": [],
        "images_to_delete_count": 0,
        "images_saved_count": 0,
    }


def test_is_job_ready_without_last_scans(tmp_path):
    job, config = make_config(tmp_path)

    is_ready, next_scan = is_job_ready(job, config)

    assert is_ready is True
    assert next_scan == ""


def test_is_job_ready_with_old_last_scan(tmp_path):
    job, config = make_config(tmp_path)
    with open(config.files.last_clean, "w") as f:
        json.dump({"test_job": make_report(hours_ago=24)}, f)

    is_ready, next_scan = is_job_ready(job, config)

    assert is_ready is True
    assert next_scan == ""


def test_is_job_ready_with_recent_last_scan(tmp_path):
    job, config = make_config(tmp_path, clean_every_n_hours=35)

    with open(config.files.last_clean, "w") as f:
        json.dump({"test_job": make_report(hours_ago=6)}, f)

    is_ready, next_scan = is_job_ready(job, config)

    assert is_ready is False
    assert next_scan != ""

    with open(config.files.last_clean, "w") as f:
        json.dump({"test_job": make_report(hours_ago=6, mode="manual")}, f)

    is_ready, next_scan = is_job_ready(job, config)

    assert is_ready is True
    assert next_scan == ""


def test_is_job_ready_after_failed_scan(tmp_path):
    job, config = make_config(tmp_path, clean_every_n_hours=35)
    with open(config.files.last_clean, "w") as f:
        json.dump({"test_job": make_report(hours_ago=1, success=False)}, f)

    assert is_job_ready(job, config) == (True, "")


def test_is_job_ready_with_outdated_report_format(tmp_path):
    job, config = make_config(tmp_path, clean_every_n_hours=35)
    with open(config.files.last_clean, "w") as f:
        json.dump({"test_job": {"job_name": "test_job", "found_tags": []}}, f)

    assert is_job_ready(job, config) == (True, "")


def test_update_latest_cleanup_and_history(tmp_path):
    job, config = make_config(tmp_path, clean_every_n_hours=35)
    result = CleanupResult(**make_report(hours_ago=1))
    assert result.mode == WorkMode.AUTO

    asyncio.run(update_latest_cleanup(result, config))
    asyncio.run(write_history("Finished 'test_job'", config))

    with open(config.files.last_clean, "r") as f:
        assert json.load(f)["test_job"]["job_name"] == "test_job"
    assert "Finished 'test_job'" in config.files.history.read_text()
    assert is_job_ready(job, config)[0] is False


def test_check_job_names(tmp_path):
    job, config = make_config(tmp_path)
    check_job_names(config)

    config.jobs.append(job)
    with pytest.raises(SystemExit):
        check_job_names(config)

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from src.models import ZERO_HASH, Commit

logger = logging.getLogger(__name__)

REF_FORMAT = "%(refname)%09%(objectname)%09%(symref)"
SHORT_NAME_PREFIXES = ("refs/heads/", "refs/remotes/", "refs/tags/")


class GitError(Exception):
    pass


class ObjectNotFound(GitError):
    pass


class RawReference(BaseModel):
    name: str
    short_name: str
    target: str

    @property
    def is_remote(self) -> bool:
        return self.name.startswith("refs/remotes/")

    @property
    def is_tag(self) -> bool:
        return self.name.startswith("refs/tags/")


def short_name(name: str) -> str:
    for prefix in SHORT_NAME_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


class TagObject(BaseModel):
    hash: str
    tagged_at: datetime


def _timestamp_from_header(header: str, field: str, obj: str) -> datetime:
    """Parse '<field> Name <email> 1700000000 +0200' from a raw object."""
    for line in header.splitlines():
        if not line:
            break
        if line.startswith(f"{field} "):
            try:
                timestamp = int(line.rsplit(" ", 2)[-2])
            except (IndexError, ValueError) as err:
                raise GitError(f"Malformed {field} line in {obj}: {line!r}") from err
            return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    raise GitError(f"No {field} found in {obj}")


class GitRepository:
    def __init__(self, path: Path | str, git_binary: str = "git") -> None:
        self.path = Path(path)
        self.git_binary = git_binary

    def _run(self, *args: str) -> str:
        cmd = [self.git_binary, *args]
        logger.debug(f"{self.path}: {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.path,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as err:
            raise GitError(
                f"Unable to run {self.git_binary} in {self.path}: {err}"
            ) from err
        if proc.returncode != 0:
            raise GitError(f"'{' '.join(cmd)}' failed: {proc.stderr.strip()}")
        return proc.stdout

    def references(self) -> list[RawReference]:
        try:
            output = self._run("for-each-ref", f"--format={REF_FORMAT}")
        except GitError as err:
            raise GitError(f"Get repository references failed: {err}") from err
        refs = []
        for line in output.splitlines():
            if not line:
                continue
            name, target, symref = line.split("\t")
            # symbolic references carry no target of their own
            refs.append(
                RawReference(
                    name=name,
                    short_name=short_name(name),
                    target=ZERO_HASH if symref else target,
                )
            )
        return refs

    def object_type(self, obj: str) -> str:
        try:
            return self._run("cat-file", "-t", obj).strip()
        except GitError as err:
            raise ObjectNotFound(f"Object {obj} not found: {err}") from err

    def commit(self, commit_hash: str) -> Commit:
        if self.object_type(commit_hash) != "commit":
            raise ObjectNotFound(f"Object {commit_hash} is not a commit")
        raw = self._run("cat-file", "commit", commit_hash)
        return Commit(
            hash=commit_hash,
            committed_at=_timestamp_from_header(raw, "committer", commit_hash),
        )

    def tag(self, tag_hash: str) -> TagObject:
        if self.object_type(tag_hash) != "tag":
            raise ObjectNotFound(f"Object {tag_hash} is not a tag object")
        raw = self._run("cat-file", "tag", tag_hash)
        return TagObject(
            hash=tag_hash, tagged_at=_timestamp_from_header(raw, "tagger", tag_hash)
        )

    def resolve_revision(self, revision: str) -> str:
        return self._run("rev-parse", "--verify", f"{revision}^{{commit}}").strip()

    def history(self, commit_hash: str, depth: int = -1) -> list[str]:
        args = ["rev-list"]
        if depth != -1:
            args.append(f"--max-count={depth}")
        args.append(commit_hash)
        return [line for line in self._run(*args).splitlines() if line]

"""Git history mining into seed Change events."""

import json
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from dig.models import (
    Change,
    ChangeType,
    Classification,
    DiffStats,
    FileDiff,
    SourceControl,
)

FIX_PATTERN = re.compile(r"\b(fix|bug|patch|resolve|hotfix|repair)\b", re.IGNORECASE)
REFACTOR_PATTERN = re.compile(
    r"\b(refactor|restructure|migrate|rewrite|redesign|overhaul|reorganize)\b",
    re.IGNORECASE,
)
DOCS_PATTERN = re.compile(r"\b(docs?|readme|documentation)\b", re.IGNORECASE)
TEST_PATTERN = re.compile(r"\b(tests?|testing|coverage)\b", re.IGNORECASE)
DEPENDENCY_PATTERN = re.compile(r"\b(bump|upgrade|deps?|dependency|dependencies)\b", re.IGNORECASE)

NUMSTAT_PATTERN = re.compile(r"^(\d+|-)\t(\d+|-)\t(.+)$")

# Null byte as delimiter to handle | in commit subjects
GIT_LOG_FORMAT = "%H%x00%aI%x00%an%x00%s"
SEPARATOR = "\x00"

BOOTSTRAP_SOURCE = "git-bootstrap"


class GitBootstrapper:
    """Mines git history into Change events, one per commit.

    Ids derive from the commit sha, so seeding the same history twice
    yields duplicates the store rejects rather than new changes.
    """

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir
        if not (project_dir / ".git").exists():
            raise ValueError(f"Not a git repository: {project_dir}")

    def _run_git(self, *args: str) -> str:
        """Run a git command and return stdout."""
        result = subprocess.run(
            ["git", *args],
            cwd=self.project_dir,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        return result.stdout

    def mine_changes(self, max_commits: int = 100, repository: str | None = None) -> list[Change]:
        """Parse git log --numstat into Change events, newest commit first."""
        raw = self._run_git(
            "log", f"--pretty=format:{GIT_LOG_FORMAT}", "--numstat",
            f"-n{max_commits}",
        )
        if not raw.strip():
            return []

        repository = repository or self.detect_project_name()
        branch = self._run_git("rev-parse", "--abbrev-ref", "HEAD").strip() or None

        commits: list[dict] = []
        for line in raw.splitlines():
            if SEPARATOR in line:
                parts = line.split(SEPARATOR)
                if len(parts) < 4:
                    continue
                commits.append({
                    "sha": parts[0], "date": parts[1], "author": parts[2],
                    "subject": parts[3], "files": [],
                })
                continue
            match = NUMSTAT_PATTERN.match(line)
            if match and commits:
                added, removed, path = match.groups()
                # binary files report "-"
                commits[-1]["files"].append(FileDiff(
                    path=path,
                    lines_added=int(added) if added != "-" else 0,
                    lines_removed=int(removed) if removed != "-" else 0,
                ))

        return [self._to_change(c, repository, branch) for c in commits]

    def _to_change(self, commit: dict, repository: str, branch: str | None) -> Change:
        files: list[FileDiff] = commit["files"]
        return Change(
            id=f"change_{commit['sha'][:16]}",
            created_at=_normalize_date(commit["date"]),
            tags={"source": BOOTSTRAP_SOURCE},
            metadata={"git.author": commit["author"], "git.subject": commit["subject"]},
            source_control=SourceControl(
                provider="git",
                repository=repository,
                commit_sha=commit["sha"],
                branch=branch if branch != "HEAD" else None,
            ),
            diff=DiffStats(
                files_changed=len(files),
                lines_added=sum(f.lines_added for f in files),
                lines_removed=sum(f.lines_removed for f in files),
                files=files[:50],
            ),
            classification=Classification(
                change_type=self._classify_commit(commit["subject"], files),
            ),
        )

    def _classify_commit(self, subject: str, files: list[FileDiff]) -> ChangeType:
        """Classify a commit subject (and file count) into a change type."""
        if FIX_PATTERN.search(subject):
            return ChangeType.BUGFIX
        if len(files) >= 10 or REFACTOR_PATTERN.search(subject):
            return ChangeType.REFACTORING
        if DEPENDENCY_PATTERN.search(subject):
            return ChangeType.DEPENDENCY
        if DOCS_PATTERN.search(subject):
            return ChangeType.DOCUMENTATION
        if TEST_PATTERN.search(subject):
            return ChangeType.TEST
        return ChangeType.FEATURE

    def detect_project_name(self) -> str:
        """Detect project name from git remote, config files, or directory name."""
        remote = self._run_git("remote", "get-url", "origin").strip()
        if remote:
            name = remote.rstrip("/").split("/")[-1]
            if name.endswith(".git"):
                name = name[:-4]
            if name:
                return name

        pyproject = self.project_dir / "pyproject.toml"
        if pyproject.exists():
            for line in pyproject.read_text(encoding="utf-8", errors="replace").splitlines():
                if line.strip().startswith("name"):
                    match = re.search(r'"([^"]+)"', line)
                    if match:
                        return match.group(1)

        pkg = self.project_dir / "package.json"
        if pkg.exists():
            try:
                data = json.loads(pkg.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                data = {}
            if isinstance(data, dict) and data.get("name"):
                return data["name"]

        return self.project_dir.name


def _normalize_date(value: str) -> str:
    """git %aI is strict ISO 8601 with offset; fall back to now if it is not."""
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return value
    except ValueError:
        return datetime.now(timezone.utc).isoformat()

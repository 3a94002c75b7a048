#!/usr/bin/env python3
import argparse
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

import arrow
from loguru import logger

DEFAULT_REMOTE = "origin"
DEFAULT_IGNORE = "origin/master"
DEFAULT_AGE = "1m"
IGNORE_FILE = ".gitsweepignore"
PASSWORD_ENV = "GIT_SWEEP_PASSWORD"
USERNAME_ENV = "GIT_SWEEP_USERNAME"

REMOTES_PREFIX = "refs/remotes/"
HEADS_PREFIX = "refs/heads/"
REF_FORMAT = "%(refname)\t%(symref)\t%(committerdate:unix)"

AGE_PATTERN = re.compile(r"(?:([0-9]+)y)?(?:([0-9]+)m)?(?:([0-9]+)d)?")
AUTH_FAILURE_PATTERN = re.compile(
    r"authentication failed"
    r"|permission denied"
    r"|could not read (?:username|password)"
    r"|terminal prompts disabled"
    r"|invalid username or password",
    re.IGNORECASE,
)

AGENT = "agent"
PLAINTEXT = "plaintext"


class SweepError(Exception):
    """Base class for every failure that aborts a sweep."""


class ConfigurationError(SweepError):
    pass


class MalformedAgeExpression(SweepError):
    pass


class RepositoryNotFound(SweepError):
    pass


class AuthenticationExhausted(SweepError):
    pass


class RefResolutionError(SweepError):
    pass


class NetworkError(SweepError):
    pass


# --- age ---

@dataclass(frozen=True)
class AgeSpec:
    years: int = 0
    months: int = 0
    days: int = 0

    def cutoff(self, now: arrow.Arrow) -> arrow.Arrow:
        # Applied one unit at a time so month-end clamping matches "years, then months, then days".
        return now.shift(years=-self.years).shift(months=-self.months).shift(days=-self.days)


def parse_age(expr: str) -> AgeSpec:
    match = AGE_PATTERN.fullmatch(expr)
    if match is None:
        raise MalformedAgeExpression(
            f"Invalid age '{expr}'. Expected something like 1y2m3d (years, months, days, in that order)."
        )
    years, months, days = (int(group or 0) for group in match.groups())
    return AgeSpec(years=years, months=months, days=days)


def cutoff_for(age: Optional[str], now: arrow.Arrow) -> Optional[arrow.Arrow]:
    """Return the cutoff instant for ``age``, or None when age filtering is disabled."""
    if not age:
        return None
    try:
        return parse_age(age).cutoff(now)
    except (ValueError, OverflowError) as e:
        raise MalformedAgeExpression(f"Age '{age}' reaches before the start of the calendar.") from e


# --- ignores ---

def strip_remotes_prefix(ref_name: str) -> str:
    if ref_name.startswith(REMOTES_PREFIX):
        return ref_name[len(REMOTES_PREFIX):]
    return ref_name


def read_ignore_file(repo_dir: str) -> list[str]:
    path = os.path.join(repo_dir, IGNORE_FILE)
    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        raise ConfigurationError(f"Could not read {path}: {e.strerror}") from e
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"{path} is not valid UTF-8.") from e

    entries = [line.strip() for line in lines]
    return [entry for entry in entries if entry and not entry.startswith("#")]


def resolve_ignores(
    repo_config_ignores: Iterable[str],
    cli_ignore_list: Iterable[str],
    default_ignore: str = DEFAULT_IGNORE,
) -> frozenset[str]:
    entries = [*repo_config_ignores, *cli_ignore_list, default_ignore]
    return frozenset(strip_remotes_prefix(entry) for entry in entries)


# --- sweep ---

@dataclass(frozen=True)
class CandidateRef:
    name: str
    committed_at: Optional[arrow.Arrow]

    @property
    def short_name(self) -> str:
        return strip_remotes_prefix(self.name)


@dataclass
class SweepPlan:
    refs: list[CandidateRef] = field(default_factory=list)
    refspecs: list[str] = field(default_factory=list)
    cutoff: Optional[arrow.Arrow] = None

    @property
    def count(self) -> int:
        return len(self.refspecs)


def deletion_refspec(ref_name: str, remote: str) -> str:
    branch = ref_name[len(f"{REMOTES_PREFIX}{remote}/"):]
    return f":{HEADS_PREFIX}{branch}"


def sweep_refs(
    candidates: Iterable[CandidateRef],
    remote: str,
    ignore_set: frozenset[str],
    cutoff: Optional[arrow.Arrow],
) -> SweepPlan:
    namespace = f"{REMOTES_PREFIX}{remote}/"
    plan = SweepPlan(cutoff=cutoff)

    for ref in candidates:
        if not ref.name.startswith(namespace) or ref.short_name in ignore_set:
            continue
        if ref.committed_at is None:
            raise RefResolutionError(f"Could not resolve the commit for {ref.name}")
        if cutoff is not None and not ref.committed_at < cutoff:
            continue
        plan.refs.append(ref)
        plan.refspecs.append(deletion_refspec(ref.name, remote))

    return plan


# --- credentials ---

@dataclass(frozen=True)
class Credential:
    kind: str
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    def git_options(self) -> list[str]:
        if self.kind != PLAINTEXT:
            return []
        lines = [f'echo "password=${PASSWORD_ENV}"']
        if self.username:
            lines.insert(0, f'echo "username=${USERNAME_ENV}"')
        helper = f'!f() {{ test "$1" = get || return 0; {"; ".join(lines)}; }}; f'
        # The empty value clears helpers inherited from the user's git config.
        return ["-c", "credential.helper=", "-c", f"credential.helper={helper}"]

    def environ(self, ssh_command: Optional[str] = None) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.kind == PLAINTEXT:
            env[PASSWORD_ENV] = self.password or ""
            if self.username:
                env[USERNAME_ENV] = self.username
        else:
            # GIT_SSH_COMMAND wins over core.sshCommand, the same order git itself uses.
            base = env.get("GIT_SSH_COMMAND") or ssh_command or "ssh"
            env["GIT_SSH_COMMAND"] = f"{base} -o BatchMode=yes"
        return env


@dataclass(frozen=True)
class AuthTrials:
    """Credentials already offered during one fetch or push."""

    tried_agent: bool = False
    tried_plaintext: bool = False

    def after(self, credential: Credential) -> "AuthTrials":
        if credential.kind == PLAINTEXT:
            return replace(self, tried_plaintext=True)
        return replace(self, tried_agent=True)


def choose_credential(
    trials: AuthTrials, password: Optional[str] = None, username: Optional[str] = None
) -> Optional[Credential]:
    # ssh-agent is never tried when a password is given
    if password:
        if not trials.tried_plaintext:
            return Credential(PLAINTEXT, username=username, password=password)
        return None
    if not trials.tried_agent:
        return Credential(AGENT, username=username)
    return None


# --- git engine ---

def run_git_command(args: list[str], repo_dir: str, env: Optional[dict[str, str]] = None) -> list[str]:
    logger.debug("git -C {} {}", repo_dir, " ".join(args))
    result = subprocess.run(
        ["git", "-C", repo_dir] + args,
        capture_output=True,
        text=True,
        check=True,
        env=env,
    )
    return result.stdout.strip().splitlines()


def _last_line(text: Optional[str]) -> str:
    lines = [line for line in (text or "").strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


def parse_ref_line(line: str) -> Optional[CandidateRef]:
    name, _, rest = line.partition("\t")
    symref, _, timestamp = rest.partition("\t")
    if symref:
        return None
    if not timestamp:
        return CandidateRef(name, None)
    try:
        return CandidateRef(name, arrow.get(int(timestamp)))
    except ValueError as e:
        raise RefResolutionError(f"Unreadable commit date '{timestamp}' for {name}") from e


class GitRepository:
    def __init__(self, path: str):
        self.path = path

    @classmethod
    def open(cls, path: str) -> "GitRepository":
        if not os.path.isdir(path):
            raise RepositoryNotFound(f"{path} does not exist or is not a directory.")
        try:
            run_git_command(["rev-parse", "--git-dir"], path)
        except FileNotFoundError as e:
            raise ConfigurationError("git executable not found on PATH.") from e
        except subprocess.CalledProcessError as e:
            raise RepositoryNotFound(f"{path} is not a valid git repository.") from e
        return cls(path)

    def remotes(self) -> list[str]:
        return run_git_command(["remote"], self.path)

    def ssh_command(self) -> Optional[str]:
        try:
            lines = run_git_command(["config", "--get", "core.sshCommand"], self.path)
        except subprocess.CalledProcessError:
            return None
        return lines[0] if lines else None

    def fetch(self, remote: str, password: Optional[str] = None, username: Optional[str] = None) -> None:
        self._run_with_credentials(["fetch", "--prune", remote], password, username)

    def remote_refs(self) -> list[CandidateRef]:
        try:
            lines = run_git_command(["for-each-ref", f"--format={REF_FORMAT}", REMOTES_PREFIX], self.path)
        except subprocess.CalledProcessError as e:
            raise RefResolutionError(f"Could not list remote references: {_last_line(e.stderr)}") from e

        refs = []
        for line in lines:
            ref = parse_ref_line(line)
            if ref is None:
                logger.debug("Skipping symbolic ref {}", line.split("\t", 1)[0])
                continue
            refs.append(ref)
        return refs

    def push_deletions(
        self,
        remote: str,
        refspecs: list[str],
        password: Optional[str] = None,
        username: Optional[str] = None,
    ) -> None:
        self._run_with_credentials(["push", remote] + refspecs, password, username)

    def _run_with_credentials(self, args: list[str], password: Optional[str], username: Optional[str]) -> list[str]:
        trials = AuthTrials()
        while True:
            credential = choose_credential(trials, password, username)
            if credential is None:
                raise AuthenticationExhausted(f"Authentication failed for 'git {args[0]}', no credentials left to try.")
            trials = trials.after(credential)
            logger.debug("Offering {} credentials to git {}", credential.kind, args[0])

            ssh_command = None
            if credential.kind == AGENT and "GIT_SSH_COMMAND" not in os.environ:
                ssh_command = self.ssh_command()
            env = credential.environ(ssh_command)
            try:
                return run_git_command(credential.git_options() + args, self.path, env=env)
            except subprocess.CalledProcessError as e:
                if AUTH_FAILURE_PATTERN.search(e.stderr or ""):
                    logger.debug("git {} rejected {} credentials: {}", args[0], credential.kind, _last_line(e.stderr))
                    continue
                reason = _last_line(e.stderr) or f"exit status {e.returncode}"
                raise NetworkError(f"git {args[0]} failed: {reason}") from e


def open_repository(path: str) -> GitRepository:
    return GitRepository.open(path)


# --- orchestration ---

@dataclass
class SweepConfig:
    path: Optional[str] = None
    remote: str = DEFAULT_REMOTE
    preview: bool = False
    ignore: tuple[str, ...] = (DEFAULT_IGNORE,)
    age: Optional[str] = DEFAULT_AGE
    password: Optional[str] = None
    username: Optional[str] = None


@dataclass
class SweepReport:
    plan: SweepPlan
    preview: bool
    removed: int = 0


def describe_count(count: int) -> str:
    return f"{count} branch" if count == 1 else f"{count} branches"


def print_plan(plan: SweepPlan, now: arrow.Arrow) -> None:
    for ref in plan.refs:
        print(f"- {ref.name}\t{ref.committed_at.humanize(now)}")

    if not plan.refs:
        print("🎉 No matching remote branch to sweep")
    elif plan.cutoff is not None:
        cutoff = plan.cutoff.format("YYYY-MM-DD HH:mm:ss ZZ")
        print(f"{describe_count(plan.count)} found with last commit before {cutoff}")
    else:
        print(f"{describe_count(plan.count)} found")


def run(config: SweepConfig, now: Optional[arrow.Arrow] = None) -> SweepReport:
    if not config.path:
        raise ConfigurationError("A repository path is required.")

    now = now or arrow.utcnow()
    cutoff = cutoff_for(config.age, now)

    repo = open_repository(config.path)
    if config.remote not in repo.remotes():
        raise ConfigurationError(f"Remote '{config.remote}' is not configured in {config.path}.")
    ignore_set = resolve_ignores(read_ignore_file(config.path), config.ignore)

    logger.info("🔄 Fetching latest remote info from {}...", config.remote)
    repo.fetch(config.remote, config.password, config.username)
    logger.info("✅ Fetch complete.")

    plan = sweep_refs(repo.remote_refs(), config.remote, ignore_set, cutoff)
    print_plan(plan, now)

    report = SweepReport(plan=plan, preview=config.preview)
    if config.preview or not plan.refspecs:
        return report

    logger.info("🔄 Deleting {} on {}...", describe_count(plan.count), config.remote)
    repo.push_deletions(config.remote, plan.refspecs, config.password, config.username)
    report.removed = plan.count
    print(f"✅ {describe_count(report.removed)} removed")
    return report


# --- cli ---

def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO", format="{message}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find and delete stale remote branches.")
    parser.add_argument("repo", help="Path to the git repository")
    parser.add_argument("--remote", default=DEFAULT_REMOTE, help="Remote to sweep (default: %(default)s)")
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Only list the branches that would be removed."
    )
    parser.add_argument(
        "--ignore",
        nargs="+",
        default=[DEFAULT_IGNORE],
        metavar="REF",
        help="Remote branches never swept, e.g. origin/develop (default: %(default)s)"
    )
    parser.add_argument(
        "--age",
        default=DEFAULT_AGE,
        help="Sweep branches whose last commit is older than this, e.g. 1y2m3d (default: %(default)s)"
    )
    parser.add_argument(
        "--no-age",
        dest="age",
        action="store_const",
        const=None,
        help="Sweep regardless of the last commit date."
    )
    parser.add_argument(
        "--password",
        default=os.environ.get(PASSWORD_ENV),
        help=f"Use username/password auth instead of ssh-agent (default: ${PASSWORD_ENV})"
    )
    parser.add_argument("--username", help="Username sent along with --password")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show the git commands being run.")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    config = SweepConfig(
        path=args.repo,
        remote=args.remote,
        preview=args.preview,
        ignore=tuple(args.ignore),
        age=args.age,
        password=args.password,
        username=args.username,
    )

    try:
        run(config)
    except SweepError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

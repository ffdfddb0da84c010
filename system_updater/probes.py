"""
Source probes: find the latest version of a target from one upstream.

Each probe kind registers itself under a string key; descriptors select a
probe by that key, so a new upstream is added by writing one class here and
nothing else changes.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import requests

from .constants import (
    CRATES_API_URL, GITHUB_API_URL, GITHUB_RELEASES_PER_PAGE, NPM_REGISTRY_URL, PYPI_URL
)
from .context import RunContext
from .exceptions import CommandError, ConfigurationError
from .models import ProbeFailureKind, ProbeResult, SourceDescriptor, Target
from .utils.command import EXIT_NOT_FOUND, EXIT_TIMEOUT
from .utils.http import ResponseTooLarge, get_json
from .utils.logger import get_logger
from .utils.validators import (
    ValidationError, compile_pattern, validate_commit_hash, validate_git_ref,
    validate_package_name, validate_url
)
from .versioning import Version, newest

logger = get_logger(__name__)

PROBE_REGISTRY: Dict[str, Type['SourceProbe']] = {}

PRERELEASE_PATTERN = re.compile(r'(?i)(alpha|beta|rc|pre|dev|preview|nightly|canary|insiders)')
_GITHUB_NAME = re.compile(r'^[A-Za-z0-9_.\-]{1,100}$')


class ProbeError(Exception):
    """Classified probe failure raised inside a probe and turned into a ProbeResult."""

    def __init__(self, kind: ProbeFailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def register_probe(kind: str) -> Callable[[Type['SourceProbe']], Type['SourceProbe']]:
    """
    Class decorator registering a probe under a source kind.

    Args:
        kind: Value of ``source.kind`` in target descriptors
    """
    def decorator(cls: Type['SourceProbe']) -> Type['SourceProbe']:
        cls.kind = kind
        PROBE_REGISTRY[kind] = cls
        return cls
    return decorator


def _require_str(params: Dict[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Source parameter '{key}' must be a non-empty string")
    return value


class SourceProbe:
    """Base class for all probes."""

    kind = ""
    REQUIRED_PARAMS: Tuple[str, ...] = ()

    def __init__(self, source: SourceDescriptor, context: RunContext) -> None:
        self.source = source
        self.params = source.params
        self.context = context

    @classmethod
    def validate(cls, params: Dict[str, Any]) -> None:
        """
        Validate descriptor parameters at registry load time.

        Raises:
            ConfigurationError: If a parameter is missing or invalid
        """
        for key in cls.REQUIRED_PARAMS:
            _require_str(params, key)
        try:
            cls._validate_params(params)
        except ValidationError as e:
            raise ConfigurationError(str(e))

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        """Kind-specific checks; subclasses override."""

    @property
    def label(self) -> str:
        return self.source.label

    def resolve_latest(self, target: Target) -> ProbeResult:
        """
        Resolve the latest version for a target.

        Never raises: every failure is returned as a typed ProbeResult.
        """
        try:
            return self._resolve(target)
        except ProbeError as e:
            failure_kind, message = e.kind, str(e)
        except requests.Timeout:
            failure_kind = ProbeFailureKind.NETWORK_ERROR
            message = f"timed out after {self.context.probe_timeout}s"
        except requests.exceptions.InvalidJSONError as e:
            failure_kind, message = ProbeFailureKind.PARSE_ERROR, f"invalid JSON: {e}"
        except requests.RequestException as e:
            failure_kind, message = ProbeFailureKind.NETWORK_ERROR, str(e)
        except ResponseTooLarge as e:
            failure_kind, message = ProbeFailureKind.PARSE_ERROR, str(e)
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
            failure_kind, message = ProbeFailureKind.PARSE_ERROR, f"malformed response: {e}"
        except CommandError as e:
            failure_kind, message = ProbeFailureKind.PARSE_ERROR, str(e)

        logger.debug(f"Probe {self.label} for {target.id} failed: {failure_kind.value}: {message}")
        return ProbeResult.failed(self.label, failure_kind, message)

    def _resolve(self, target: Target) -> ProbeResult:
        raise NotImplementedError

    def _ok(self, version: str, is_commit: bool = False, security: bool = False) -> ProbeResult:
        return ProbeResult.resolved(self.label, version, is_commit=is_commit, security=security)

    # HTTP helpers

    def _get(self, url: str, headers: Optional[Dict[str, str]] = None,
             params: Optional[Dict[str, Any]] = None) -> requests.Response:
        response = get_json(self.context.http(), url, timeout=self.context.probe_timeout,
                            headers=headers, params=params)
        self._check_status(response)
        return response

    @staticmethod
    def _check_status(response: requests.Response) -> None:
        status = response.status_code
        if status == 404:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, "not found upstream (HTTP 404)")
        if status == 429 or (status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"):
            reset = response.headers.get("X-RateLimit-Reset")
            detail = f", resets at {reset}" if reset else ""
            raise ProbeError(ProbeFailureKind.RATE_LIMITED, f"rate limited (HTTP {status}{detail})")
        if status >= 400:
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR, f"HTTP {status}")

    @staticmethod
    def _json_object(response: requests.Response) -> Dict[str, Any]:
        data = response.json()
        if not isinstance(data, dict):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, "expected a JSON object")
        return data

    # Command helpers

    def _run(self, argv: List[str], env: Optional[Dict[str, str]] = None):
        result = self.context.runner.run(argv, timeout=self.context.probe_timeout, env=env)
        if result.exit_code == EXIT_NOT_FOUND:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{argv[0]} is not installed")
        if result.exit_code == EXIT_TIMEOUT:
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR,
                             f"{argv[0]} timed out after {self.context.probe_timeout}s")
        return result


# APT

@dataclass
class AptPolicy:
    """Installed and candidate version of one package from ``apt-cache policy``."""
    package: str
    installed: Optional[str]
    candidate: Optional[str]
    security: bool = False


def parse_apt_policy(output: str) -> Dict[str, AptPolicy]:
    """
    Parse the output of ``apt-cache policy pkg [pkg...]``.

    A candidate is flagged as a security update when one of its origins in the
    version table is a ``-security`` pocket.

    Returns:
        Mapping of package name to policy entry
    """
    entries: Dict[str, AptPolicy] = {}
    current: Optional[AptPolicy] = None
    in_candidate_block = False

    for line in output.splitlines():
        if not line.strip():
            continue
        if not line[0].isspace() and line.rstrip().endswith(":"):
            name = line.strip()[:-1]
            current = AptPolicy(package=name, installed=None, candidate=None)
            entries[name] = current
            in_candidate_block = False
            continue
        if current is None:
            continue

        stripped = line.strip()
        if stripped.startswith("Installed:"):
            value = stripped.split(":", 1)[1].strip()
            current.installed = None if value == "(none)" else value
        elif stripped.startswith("Candidate:"):
            value = stripped.split(":", 1)[1].strip()
            current.candidate = None if value == "(none)" else value
        elif stripped.startswith("Version table:"):
            in_candidate_block = False
        else:
            # Version table rows: "*** 1.2-3 500" or "1.2-3 500" followed by origin lines
            row = stripped[4:] if stripped.startswith("***") else stripped
            parts = row.split()
            if len(parts) == 2 and parts[1].isdigit() and not parts[0].isdigit():
                in_candidate_block = parts[0] == current.candidate
            elif in_candidate_block and "-security" in stripped:
                current.security = True

    return entries


def strip_debian_revision(version: str) -> str:
    """Drop the epoch and the packaging revision: ``1:2.3-1ubuntu1`` -> ``2.3``."""
    if ":" in version.split("-", 1)[0]:
        version = version.split(":", 1)[1]
    return version.rsplit("-", 1)[0] if "-" in version else version


@register_probe("apt")
class AptProbe(SourceProbe):
    """Candidate version from the local APT index."""

    REQUIRED_PARAMS = ("package",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid package name: {params['package']}")

    def _resolve(self, target: Target) -> ProbeResult:
        package = self.params["package"]
        result = self._run(["apt-cache", "policy", package])
        if not result.ok:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR,
                             f"apt-cache exited with {result.exit_code}: {result.stderr.strip()}")

        policy = parse_apt_policy(result.stdout).get(package)
        if policy is None or policy.candidate is None:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not in the package index")
        if not re.match(r'^(\d+:)?\d[A-Za-z0-9.+~:\-]*$', policy.candidate):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"malformed candidate {policy.candidate!r}")

        version = policy.candidate
        if self.params.get("strip_revision"):
            version = strip_debian_revision(version)
        return self._ok(version, security=policy.security)


# GitHub

def strip_tag_prefix(tag: str, prefix: str) -> str:
    """Remove a tag prefix such as ``v`` or ``release-`` when present."""
    if prefix and tag.startswith(prefix):
        return tag[len(prefix):]
    return tag


@register_probe("github")
class GithubReleaseProbe(SourceProbe):
    """Newest release (or tag) of a GitHub repository."""

    REQUIRED_PARAMS = ("owner", "repo")

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        for key in ("owner", "repo"):
            if not _GITHUB_NAME.match(params[key]):
                raise ValidationError(f"Invalid GitHub {key}: {params[key]}")
        if params.get("endpoint", "releases") not in ("releases", "tags"):
            raise ValidationError("GitHub endpoint must be 'releases' or 'tags'")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        if self.context.github_token:
            headers["Authorization"] = f"Bearer {self.context.github_token}"
        return headers

    def _resolve(self, target: Target) -> ProbeResult:
        owner, repo = self.params["owner"], self.params["repo"]
        endpoint = self.params.get("endpoint", "releases")
        prefix = self.params.get("tag_prefix", "v")
        include_prereleases = bool(self.params.get("include_prereleases", False))

        response = self._get(f"{GITHUB_API_URL}/repos/{owner}/{repo}/{endpoint}",
                             headers=self._headers(),
                             params={"per_page": GITHUB_RELEASES_PER_PAGE})
        items = response.json()
        if not isinstance(items, list):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"expected a list of {endpoint}")

        candidates = []
        for item in items:
            if endpoint == "releases":
                if item.get("draft"):
                    continue
                tag = item["tag_name"]
                prerelease = bool(item.get("prerelease"))
            else:
                tag = item["name"]
                prerelease = bool(PRERELEASE_PATTERN.search(tag))
            if prerelease and not include_prereleases:
                continue
            version = strip_tag_prefix(tag, prefix)
            if Version.parse(version) is not None:
                candidates.append(version)

        latest = newest(candidates)
        if latest is None:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"no usable {endpoint} for {owner}/{repo}")
        return self._ok(latest)


# Registries

@register_probe("npm")
class NpmRegistryProbe(SourceProbe):
    """A dist-tag (``latest`` by default) from the npm registry."""

    REQUIRED_PARAMS = ("package",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid npm package name: {params['package']}")
        registry = params.get("registry")
        if registry is not None and not validate_url(registry, require_https=True):
            raise ValidationError(f"Invalid npm registry URL: {registry}")

    def _resolve(self, target: Target) -> ProbeResult:
        package = self.params["package"]
        dist_tag = self.params.get("dist_tag", "latest")
        registry = self.params.get("registry", NPM_REGISTRY_URL).rstrip("/")

        response = self._get(f"{registry}/{quote(package, safe='@')}",
                             headers={"Accept": "application/vnd.npm.install-v1+json"})
        document = self._json_object(response)
        tags = document.get("dist-tags")
        if not isinstance(tags, dict):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, "registry document has no dist-tags")
        version = tags.get(dist_tag)
        if not version:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"dist-tag '{dist_tag}' not found for {package}")
        return self._ok(str(version))


@register_probe("pypi")
class PypiProbe(SourceProbe):
    """Latest release from the PyPI JSON API."""

    REQUIRED_PARAMS = ("package",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid PyPI package name: {params['package']}")

    def _resolve(self, target: Target) -> ProbeResult:
        document = self._json_object(self._get(f"{PYPI_URL}/{self.params['package']}/json"))
        return self._ok(str(document["info"]["version"]))


@register_probe("crates")
class CratesProbe(SourceProbe):
    """Newest stable version from crates.io."""

    REQUIRED_PARAMS = ("package",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid crate name: {params['package']}")

    def _resolve(self, target: Target) -> ProbeResult:
        document = self._json_object(self._get(f"{CRATES_API_URL}/{self.params['package']}"))
        crate = document["crate"]
        version = crate.get("max_stable_version") or crate.get("max_version")
        if not version:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, "crate has no published versions")
        return self._ok(str(version))


# Git remotes

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "true"}


def _parse_ls_remote(output: str) -> List[Tuple[str, str]]:
    refs = []
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) != 2:
            parts = line.strip().split()
        if len(parts) != 2:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"unexpected ls-remote line: {line!r}")
        refs.append((parts[0], parts[1]))
    return refs


class _GitRemoteProbe(SourceProbe):
    REQUIRED_PARAMS = ("url",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_url(params["url"]):
            raise ValidationError(f"Invalid git URL: {params['url']}")

    def _ls_remote(self, *args: str) -> List[Tuple[str, str]]:
        result = self._run(["git", "ls-remote", *args], env=_GIT_ENV)
        if not result.ok:
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR,
                             f"git ls-remote exited with {result.exit_code}: {result.stderr.strip()}")
        return _parse_ls_remote(result.stdout)


@register_probe("git_commit")
class GitCommitProbe(_GitRemoteProbe):
    """Head commit of a remote branch, read without cloning."""

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        super()._validate_params(params)
        if not validate_git_ref(params.get("branch", "master")):
            raise ValidationError(f"Invalid branch name: {params.get('branch')}")

    def _resolve(self, target: Target) -> ProbeResult:
        branch = self.params.get("branch", "master")
        ref = f"refs/heads/{branch}"
        for commit, name in self._ls_remote(self.params["url"], ref):
            if name == ref:
                if not validate_commit_hash(commit):
                    raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"malformed commit hash {commit!r}")
                return self._ok(commit.lower(), is_commit=True)
        raise ProbeError(ProbeFailureKind.NOT_FOUND, f"branch {branch} not found")


@register_probe("git_tag")
class GitTagProbe(_GitRemoteProbe):
    """Newest version tag of a remote repository, read without cloning."""

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        super()._validate_params(params)
        if params.get("tag_pattern") is not None:
            compile_pattern(params["tag_pattern"])

    def _resolve(self, target: Target) -> ProbeResult:
        prefix = self.params.get("tag_prefix", "v")
        pattern = self.params.get("tag_pattern")
        compiled = compile_pattern(pattern) if pattern else None
        include_prereleases = bool(self.params.get("include_prereleases", False))

        candidates = []
        for _, ref in self._ls_remote("--tags", "--refs", self.params["url"]):
            tag = ref[len("refs/tags/"):] if ref.startswith("refs/tags/") else ref
            if compiled is not None:
                match = compiled.search(tag)
                if not match:
                    continue
                version = match.group(1) if compiled.groups else match.group(0)
            else:
                version = strip_tag_prefix(tag, prefix)
            if not include_prereleases and PRERELEASE_PATTERN.search(version):
                continue
            if Version.parse(version) is not None:
                candidates.append(version)

        latest = newest(candidates)
        if latest is None:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, "no version tags found")
        return self._ok(latest)


# System package managers

PACKAGE_MANAGER_TOOLS = {
    "apt": "apt-cache",
    "pacman": "pacman",
    "dnf": "dnf",
    "brew": "brew",
    "snap": "snap",
}


def detect_package_manager(context: RunContext) -> Optional[str]:
    """Return the first supported package manager found on PATH."""
    for manager, tool in PACKAGE_MANAGER_TOOLS.items():
        if context.runner.which(tool):
            return manager
    return None


@register_probe("package_manager")
class PackageManagerProbe(SourceProbe):
    """Candidate version from whichever system package manager is present."""

    REQUIRED_PARAMS = ("package",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid package name: {params['package']}")
        manager = params.get("manager")
        if manager is not None and manager not in PACKAGE_MANAGER_TOOLS:
            raise ValidationError(f"Unsupported package manager: {manager}")

    def _resolve(self, target: Target) -> ProbeResult:
        manager = self.params.get("manager") or detect_package_manager(self.context)
        if manager is None:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, "no supported package manager found")
        package = self.params["package"]

        if manager == "apt":
            return AptProbe(self.source, self.context)._resolve(target)
        if manager == "pacman":
            return self._ok(self._pacman_candidate(package))
        if manager == "dnf":
            return self._ok(self._dnf_candidate(package))
        if manager == "snap":
            return self._ok(self._snap_candidate(package, self.params.get("channel", "latest/stable")))
        return self._ok(self._brew_candidate(package))

    def _pacman_candidate(self, package: str) -> str:
        result = self._run(["pacman", "-Si", package])
        if not result.ok:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not in the sync databases")
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "Version" and value.strip():
                return value.strip()
        raise ProbeError(ProbeFailureKind.PARSE_ERROR, "no Version field in pacman -Si output")

    def _dnf_candidate(self, package: str) -> str:
        result = self._run(["dnf", "repoquery", "-q", "--latest-limit=1",
                            "--queryformat", "%{evr}\n", package])
        if not result.ok:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"dnf exited with {result.exit_code}")
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not in any repository")
        return lines[-1]

    def _snap_candidate(self, package: str, channel: str) -> str:
        result = self._run(["snap", "info", package])
        if not result.ok:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not in the snap store")
        # "  latest/stable:    v11.2.0  2024-06-25 (271) 184MB -"; closed channels show "--" or "^"
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == f"{channel}:" and parts[1] not in ("--", "^", "\u2191"):
                return parts[1]
        raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} has no release on {channel}")

    def _brew_candidate(self, package: str) -> str:
        result = self._run(["brew", "info", "--json=v2", package])
        if not result.ok:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not known to brew")
        data = json.loads(result.stdout)
        if data.get("formulae"):
            return str(data["formulae"][0]["versions"]["stable"])
        if data.get("casks"):
            return str(data["casks"][0]["version"])
        raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{package} is not known to brew")


def create_probe(source: SourceDescriptor, context: RunContext) -> SourceProbe:
    """
    Instantiate the probe registered for a source descriptor.

    Raises:
        ConfigurationError: If no probe is registered for the kind
    """
    probe_cls = PROBE_REGISTRY.get(source.kind)
    if probe_cls is None:
        raise ConfigurationError(f"Unknown source kind: {source.kind}")
    return probe_cls(source, context)

#!/usr/bin/env python3
"""cloudflare-companion - Cloudflare DNS records for Traefik hosts

Discovers hostnames served by Traefik and makes sure each one has a DNS record
in Cloudflare pointing at the configured target. Hostnames come from two
sources, merged by priority (lower wins):

    1. Docker container/service labels (startup scan + live event stream)
    2. Traefik API routers (periodic polling)

Records are created or updated, never deleted.

Environment variables:

    Cloudflare:
        CF_TOKEN               API token, or global API key when CF_EMAIL is set (required)
        CF_EMAIL               Account email; switches to X-Auth-Email/X-Auth-Key auth
        TARGET_DOMAIN          Default record content, e.g. "lb.example.net" (required)
        RC_TYPE                Record type (default: CNAME)
        DEFAULT_TTL            Record TTL when a domain does not set one (default: 1 = auto)

        Secrets may also be supplied as files: NAME_FILE=/path, or /run/secrets/NAME.

    Domains (at least one, numbered from 1):
        DOMAIN1                        Zone name, e.g. "example.com"
        DOMAIN1_ZONE_ID                Cloudflare zone id (required per domain, secret)
        DOMAIN1_TTL                    TTL override
        DOMAIN1_PROXIED                "true" to proxy through Cloudflare (default: false)
        DOMAIN1_TARGET_DOMAIN          Target override
        DOMAIN1_COMMENT                Record comment
        DOMAIN1_EXCLUDED_SUB_DOMAINS   Comma-separated labels never synced, e.g. "internal,dev"

        DOMAINS_CONFIG_PATH    Optional YAML file (or directory of *.yaml files) with extra domains.
                               Example:
                                 domains:
                                   - name: "example.org"
                                     zone_id: "0123abcd"
                                     proxied: true
                                     excluded_sub_domains: ["internal"]

    Docker discovery:
        ENABLE_DOCKER_POLL             Scan containers and watch events (default: true)
        DOCKER_SWARM_MODE              Also scan/watch swarm services (default: false)
        DOCKER_HOST                    Docker endpoint (default: unix socket)
        DOCKER_CA_CERT_FILE            CA bundle for tcp:// or https:// DOCKER_HOST
        DOCKER_INSECURE_SKIP_VERIFY    Skip Docker TLS verification (default: false)
        DOCKER_EVENT_BACKOFF_SECONDS   Delay before reconnecting the event stream (default: 2)
        TRAEFIK_VERSION                "1" (Host:a,b labels) or "2" (Host(`a`) labels) (default: 2)
        TRAEFIK_FILTER_LABEL           Label key regex used by TRAEFIK_FILTER (default: traefik.constraint)
        TRAEFIK_FILTER                 Label value regex; when set only matching entities are synced

    Traefik polling:
        ENABLE_TRAEFIK_POLL                  Poll Traefik routers (default: false, requires version 2)
        TRAEFIK_POLL_URL                     Traefik API base URL, e.g. http://traefik:8080
        TRAEFIK_POLL_SECONDS                 Poll interval (default: 60)
        TRAEFIK_POLL_CA_CERT_FILE            CA bundle for the Traefik API
        TRAEFIK_POLL_INSECURE_SKIP_VERIFY    Skip Traefik TLS verification (default: false)
        TRAEFIK_INCLUDED_HOST1..N            Host regexes to include (default: everything)
        TRAEFIK_EXCLUDED_HOST1..N            Host regexes to exclude

    Runtime:
        DRY_RUN                Log intended changes without calling Cloudflare (default: false)
        REFRESH_ENTRIES        Update records even when content already matches (default: false)
        LOG_LEVEL              VERBOSE, DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

import docker
import requests
import yaml
from docker.errors import DockerException

# =============================================================================
# Constants
# =============================================================================

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_TIMEOUT_SECONDS = 20.0
TRAEFIK_TIMEOUT_SECONDS = 15.0
DOCKER_TIMEOUT_SECONDS = 20

PRIORITY_DOCKER = 1
PRIORITY_TRAEFIK = 2

DEFAULT_SECRET_DIRS: List[str] = ["/run/secrets"]

DOCKER_EVENT_FILTERS = {"type": ["container", "service"]}
DOCKER_EVENT_WINDOW_SECONDS = 60

# =============================================================================
# Logging Setup
# =============================================================================

VERBOSE = 5
logging.addLevelName(VERBOSE, "VERBOSE")

_LOG_LEVELS = {
    "VERBOSE": VERBOSE,
    "DEBUG": logging.DEBUG,
    "NOTICE": logging.INFO,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

logger = logging.getLogger(__name__)


def setup_logging(level_name: str) -> None:
    """Configure root logging. VERBOSE sits below DEBUG and adds per-host chatter."""
    logging.basicConfig(
        level=_LOG_LEVELS.get(level_name.strip().upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Configuration is missing or invalid; the process cannot start."""


class DiscoveryError(Exception):
    """Enumerating containers or services failed."""


class CloudflareAPIError(Exception):
    """A Cloudflare API call failed (HTTP >= 400 or success=false)."""

    def __init__(self, message: str, *, status_code: int = 0, errors: Sequence[str] = ()):
        super().__init__(message)
        self.status_code = status_code
        self.errors = list(errors)


class TraefikDecodeError(Exception):
    """Traefik answered 200 but the body is not a JSON list of routers."""

    def __init__(self, message: str, *, status_code: int, body: str):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DomainConfig:
    """A Cloudflare zone managed by the companion."""

    name: str
    zone_id: str
    target_domain: str
    ttl: int = 1
    proxied: bool = False
    comment: str = ""
    excluded_sub_domains: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RemoteRecord:
    """A DNS record as currently stored in Cloudflare."""

    id: str
    content: str


@dataclass(frozen=True)
class DNSRecordRequest:
    """Body sent to Cloudflare when creating or updating a record."""

    type: str
    name: str
    content: str
    ttl: int
    proxied: bool
    comment: str = ""

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "name": self.name,
            "content": self.content,
            "ttl": self.ttl,
            "proxied": self.proxied,
        }
        if self.comment:
            payload["comment"] = self.comment
        return payload


@dataclass(frozen=True)
class TraefikRouter:
    """An HTTP router returned by the Traefik API."""

    name: str
    rule: str
    status: str


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration. Built once by load_settings()."""

    cf_token: str
    target_domain: str
    domains: Tuple[DomainConfig, ...]
    cf_email: str = ""
    record_type: str = "CNAME"
    default_ttl: int = 1
    dry_run: bool = False
    refresh_entries: bool = False
    log_level: str = "INFO"
    enable_docker_poll: bool = True
    docker_swarm_mode: bool = False
    docker_ca_cert_file: str = ""
    docker_insecure_skip_verify: bool = False
    docker_event_backoff_seconds: float = 2.0
    enable_traefik_poll: bool = False
    traefik_version: str = "2"
    traefik_poll_url: str = ""
    traefik_poll_seconds: int = 60
    traefik_poll_ca_cert_file: str = ""
    traefik_poll_insecure_skip_verify: bool = False
    traefik_filter: Optional[re.Pattern] = None
    traefik_filter_label: re.Pattern = re.compile("traefik.constraint")
    included_hosts: Tuple[re.Pattern, ...] = (re.compile(".*"),)
    excluded_hosts: Tuple[re.Pattern, ...] = ()

    @property
    def traefik_poll_verify(self) -> Any:
        """Value for requests' ``verify`` argument when polling Traefik."""
        if self.traefik_poll_insecure_skip_verify:
            return False
        return self.traefik_poll_ca_cert_file or True


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return default


def _parse_int(value: Any, *, default: int) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


def _valid_uri(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def _compile_pattern(name: str, value: str) -> re.Pattern:
    try:
        return re.compile(value)
    except re.error as e:
        raise ConfigError(f"invalid {name} regex: {e}") from e


def _is_matching(host: str, patterns: Iterable[re.Pattern]) -> bool:
    return any(pattern.search(host) for pattern in patterns)


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def run_with_recover(scope: str, fn: Callable[[], Any]) -> None:
    """Run fn, logging any exception under the scope tag instead of propagating it."""
    try:
        fn()
    except Exception as e:
        logger.error(f"recovered error in {scope}: {e}", exc_info=True)


# =============================================================================
# Configuration
# =============================================================================

_DOMAIN_KEY_RE = re.compile(r"^DOMAIN([0-9]+)$", re.IGNORECASE)
_INCLUDED_HOST_KEY_RE = re.compile(r"^TRAEFIK_INCLUDED_HOST([0-9]+)$", re.IGNORECASE)
_EXCLUDED_HOST_KEY_RE = re.compile(r"^TRAEFIK_EXCLUDED_HOST([0-9]+)$", re.IGNORECASE)


def _read_secret_file(location: str, secret_dirs: Sequence[str]) -> str:
    location = (location or "").strip()
    if not location:
        return ""

    paths = [Path(location)]
    if not location.startswith("/"):
        paths.extend(Path(d) / location for d in secret_dirs)

    for path in paths:
        try:
            value = path.read_text("utf-8").strip()
        except OSError:
            continue
        if value:
            return value
    return ""


def get_secret_by_env(
    name: str,
    environ: Optional[Mapping[str, str]] = None,
    secret_dirs: Optional[Sequence[str]] = None,
) -> str:
    """Resolve a secret value.

    Lookup order: ``NAME_FILE``/``name_FILE`` paths, ``<secret dir>/NAME`` and
    ``<secret dir>/name`` files, then the ``NAME``/``name`` variables. The
    first non-empty, whitespace-trimmed value wins.
    """
    env = os.environ if environ is None else environ
    dirs = DEFAULT_SECRET_DIRS if secret_dirs is None else secret_dirs
    lower_name = name.lower()

    file_locations = [env.get(f"{name}_FILE", ""), env.get(f"{lower_name}_FILE", "")]
    file_locations.extend(str(Path(d) / n) for d in dirs for n in (name, lower_name))
    for location in file_locations:
        value = _read_secret_file(location, dirs)
        if value:
            return value

    for candidate in (env.get(name, ""), env.get(lower_name, "")):
        if candidate.strip():
            return candidate.strip()
    return ""


def _numbered_keys(env: Mapping[str, str], key_re: re.Pattern) -> List[str]:
    matched = [(int(m.group(1)), key) for key in env for m in [key_re.match(key)] if m]
    return [key for _, key in sorted(matched)]


def _load_env_domains(
    env: Mapping[str, str],
    secret_dirs: Sequence[str],
    *,
    default_ttl: int,
    target_domain: str,
) -> List[DomainConfig]:
    domains: List[DomainConfig] = []
    for key in _numbered_keys(env, _DOMAIN_KEY_RE):
        name = env.get(key, "").strip()
        if not name:
            continue
        zone_id = get_secret_by_env(f"{key}_ZONE_ID", env, secret_dirs)
        if not zone_id:
            raise ConfigError(f"{key}_ZONE_ID is not set")
        domains.append(
            DomainConfig(
                name=name,
                zone_id=zone_id,
                target_domain=env.get(f"{key}_TARGET_DOMAIN", "").strip() or target_domain,
                ttl=_parse_int(env.get(f"{key}_TTL"), default=default_ttl),
                proxied=_parse_bool(env.get(f"{key}_PROXIED"), default=False),
                comment=env.get(f"{key}_COMMENT", ""),
                excluded_sub_domains=_split_csv(env.get(f"{key}_EXCLUDED_SUB_DOMAINS", "")),
            )
        )
    return domains


def _load_yaml_domains(
    config_path: str, *, default_ttl: int, target_domain: str
) -> List[DomainConfig]:
    domains: List[DomainConfig] = []
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to load domains from {config_file}: {e}") from e

        if not config_data:
            logger.warning(f"Config file {config_file} is empty")
            continue
        if not isinstance(config_data, dict):
            raise ConfigError(
                f"{config_file} must be a mapping with a 'domains' key, "
                f"got {type(config_data).__name__}"
            )
        if "domains" not in config_data:
            logger.warning(f"Config file {config_file} missing 'domains' key")
            continue

        entries = config_data["domains"] or []
        if not isinstance(entries, list):
            raise ConfigError(f"'domains' in {config_file} must be a list")

        for item in entries:
            if not isinstance(item, dict):
                logger.warning(f"Skipping non-dict domain entry in {config_file}: {item}")
                continue
            name = str(item.get("name") or "").strip()
            zone_id = str(item.get("zone_id") or "").strip()
            if not name or not zone_id:
                raise ConfigError(f"domain entry in {config_file} needs both name and zone_id")
            excluded = item.get("excluded_sub_domains") or []
            if isinstance(excluded, str):
                excluded_subs = _split_csv(excluded)
            else:
                excluded_subs = tuple(str(s).strip() for s in excluded if str(s).strip())
            domains.append(
                DomainConfig(
                    name=name,
                    zone_id=zone_id,
                    target_domain=str(item.get("target_domain") or "").strip() or target_domain,
                    ttl=_parse_int(item.get("ttl"), default=default_ttl),
                    proxied=_parse_bool(item.get("proxied"), default=False),
                    comment=str(item.get("comment") or ""),
                    excluded_sub_domains=excluded_subs,
                )
            )
    return domains


def _load_host_patterns(env: Mapping[str, str], key_re: re.Pattern) -> List[re.Pattern]:
    return [_compile_pattern(key, env.get(key, "")) for key in _numbered_keys(env, key_re)]


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    secret_dirs: Optional[Sequence[str]] = None,
) -> Settings:
    """Build Settings from the environment. Raises ConfigError on anything fatal."""
    env = os.environ if environ is None else environ
    dirs = DEFAULT_SECRET_DIRS if secret_dirs is None else secret_dirs

    cf_token = get_secret_by_env("CF_TOKEN", env, dirs)
    if not cf_token:
        raise ConfigError("CF_TOKEN not defined")
    cf_email = get_secret_by_env("CF_EMAIL", env, dirs)

    target_domain = env.get("TARGET_DOMAIN", "").strip()
    if not target_domain:
        raise ConfigError("TARGET_DOMAIN not defined")

    default_ttl = _parse_int(env.get("DEFAULT_TTL"), default=1)
    domains = _load_env_domains(env, dirs, default_ttl=default_ttl, target_domain=target_domain)
    domains_config_path = env.get("DOMAINS_CONFIG_PATH", "").strip()
    if domains_config_path:
        domains.extend(
            _load_yaml_domains(
                domains_config_path, default_ttl=default_ttl, target_domain=target_domain
            )
        )
    if not domains:
        raise ConfigError("DOMAIN1 not defined")

    enable_docker_poll = _parse_bool(env.get("ENABLE_DOCKER_POLL"), default=True)
    docker_swarm_mode = _parse_bool(env.get("DOCKER_SWARM_MODE"), default=False)
    if docker_swarm_mode and not enable_docker_poll:
        raise ConfigError("cannot enable DOCKER_SWARM_MODE without ENABLE_DOCKER_POLL=true")

    filter_label = env.get("TRAEFIK_FILTER_LABEL", "").strip() or "traefik.constraint"
    filter_raw = env.get("TRAEFIK_FILTER", "")
    traefik_filter = _compile_pattern("TRAEFIK_FILTER", filter_raw) if filter_raw else None

    included_hosts = _load_host_patterns(env, _INCLUDED_HOST_KEY_RE) or [re.compile(".*")]
    excluded_hosts = _load_host_patterns(env, _EXCLUDED_HOST_KEY_RE)

    traefik_version = env.get("TRAEFIK_VERSION", "").strip() or "2"
    traefik_poll_url = env.get("TRAEFIK_POLL_URL", "").strip()
    enable_traefik_poll = _parse_bool(env.get("ENABLE_TRAEFIK_POLL"), default=False)
    if enable_traefik_poll and traefik_version != "2":
        logger.warning(f"Traefik polling disabled: requires TRAEFIK_VERSION=2, got {traefik_version}")
        enable_traefik_poll = False
    elif enable_traefik_poll and not _valid_uri(traefik_poll_url):
        logger.error(f"Traefik polling disabled: bad url '{traefik_poll_url}'")
        enable_traefik_poll = False

    return Settings(
        cf_token=cf_token,
        cf_email=cf_email,
        target_domain=target_domain,
        domains=tuple(domains),
        record_type=env.get("RC_TYPE", "").strip() or "CNAME",
        default_ttl=default_ttl,
        dry_run=_parse_bool(env.get("DRY_RUN"), default=False),
        refresh_entries=_parse_bool(env.get("REFRESH_ENTRIES"), default=False),
        log_level=env.get("LOG_LEVEL", "").strip() or "INFO",
        enable_docker_poll=enable_docker_poll,
        docker_swarm_mode=docker_swarm_mode,
        docker_ca_cert_file=env.get("DOCKER_CA_CERT_FILE", "").strip(),
        docker_insecure_skip_verify=_parse_bool(
            env.get("DOCKER_INSECURE_SKIP_VERIFY"), default=False
        ),
        docker_event_backoff_seconds=float(
            _parse_int(env.get("DOCKER_EVENT_BACKOFF_SECONDS"), default=2)
        ),
        enable_traefik_poll=enable_traefik_poll,
        traefik_version=traefik_version,
        traefik_poll_url=traefik_poll_url,
        traefik_poll_seconds=max(1, _parse_int(env.get("TRAEFIK_POLL_SECONDS"), default=60)),
        traefik_poll_ca_cert_file=env.get("TRAEFIK_POLL_CA_CERT_FILE", "").strip(),
        traefik_poll_insecure_skip_verify=_parse_bool(
            env.get("TRAEFIK_POLL_INSECURE_SKIP_VERIFY"), default=False
        ),
        traefik_filter=traefik_filter,
        traefik_filter_label=_compile_pattern("TRAEFIK_FILTER_LABEL", filter_label),
        included_hosts=tuple(included_hosts),
        excluded_hosts=tuple(excluded_hosts),
    )


def report_settings(settings: Settings) -> None:
    if settings.dry_run:
        logger.warning(f"Dry Run: {settings.dry_run}")
    logger.info(f"API Mode: {'Global' if settings.cf_email else 'Scoped'}")
    logger.debug(f"Docker Polling: {settings.enable_docker_poll}")
    logger.debug(f"Swarm Mode: {settings.docker_swarm_mode}")
    logger.debug(f"Refresh Entries: {settings.refresh_entries}")
    logger.debug(f"Traefik Version: {settings.traefik_version}")
    logger.debug(f"Default TTL: {settings.default_ttl}")
    if settings.enable_traefik_poll:
        logger.debug(f"Traefik Poll Url: {settings.traefik_poll_url}")
        logger.debug(f"Traefik Poll Seconds: {settings.traefik_poll_seconds}")
    for dom in settings.domains:
        logger.debug(
            f"Domain Configuration: {dom.name} (target={dom.target_domain}, ttl={dom.ttl}, "
            f"proxied={dom.proxied}, excluded={','.join(dom.excluded_sub_domains) or '-'})"
        )


# =============================================================================
# Rule Parsers
# =============================================================================

_V1_HOST_PREFIX = "Host:"
_V2_HOST_CALL_RE = re.compile(r"\bHost\(([^)]*)\)")
_V2_HOSTNAME_RE = re.compile(r"`([a-zA-Z0-9.\-]+)`")

_V1_RULE_LABEL_RE = re.compile(r"traefik.*.frontend.rule")
_V2_RULE_LABEL_RE = re.compile(r"traefik.*?\.rule")


def parse_traefik_v1_host_rule(rule: Any) -> List[str]:
    """Extract hostnames from a Traefik v1 ``Host:a,b`` frontend rule."""
    if not isinstance(rule, str):
        return []
    idx = rule.find(_V1_HOST_PREFIX)
    if idx < 0:
        return []
    # v1 separates matchers with ';', e.g. "Host:a.com;PathPrefix:/api"
    raw = rule[idx + len(_V1_HOST_PREFIX) :].split(";", 1)[0]
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_traefik_v2_rule(rule: Any) -> List[str]:
    """Extract hostnames from every ``Host(`...`)`` call in a Traefik v2 rule.

    Other predicates (``PathPrefix``, ``Headers`` ...) combined with ``&&``/``||``
    are ignored, and a multi-argument ``Host(`a`, `b`)`` yields both hosts.
    """
    if not isinstance(rule, str):
        return []
    hosts: List[str] = []
    for call in _V2_HOST_CALL_RE.finditer(rule):
        hosts.extend(m.group(1) for m in _V2_HOSTNAME_RE.finditer(call.group(1)))
    return hosts


# =============================================================================
# Mapping Merge
# =============================================================================


def add_to_mappings(current: Dict[str, int], incoming: Mapping[str, int]) -> None:
    """Merge incoming into current in place, keeping the lowest priority per host."""
    for host, priority in incoming.items():
        existing = current.get(host)
        if existing is None or existing > priority:
            current[host] = priority


def merge_mappings(*snapshots: Mapping[str, int]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for snapshot in snapshots:
        add_to_mappings(merged, snapshot)
    return merged


# =============================================================================
# Synced State
# =============================================================================


class SyncedState:
    """Hostname -> priority at which it was last synced successfully.

    Shared by every discovery thread. The lock only guards the dict; callers
    never hold it across a Cloudflare call.
    """

    def __init__(self) -> None:
        self._synced: Dict[str, int] = {}
        self._lock = threading.Lock()

    def should_sync(self, name: str, priority: int) -> bool:
        with self._lock:
            current = self._synced.get(name)
        return current is None or current > priority

    def mark_synced(self, name: str, priority: int) -> None:
        """Record a successful sync of `name` at `priority`.

        The entry is overwritten unless it already holds a lower (more
        authoritative) priority. That only happens when two sources race on
        the same host: should_sync() let both through, and the better one
        finished first. Keeping it means a host never slides back to a
        weaker source.
        """
        with self._lock:
            current = self._synced.get(name)
            if current is None or current >= priority:
                self._synced[name] = priority
            else:
                logger.debug(
                    f"Keeping {name} at priority {current}; ignoring late sync at {priority}"
                )

    def get(self, name: str) -> Optional[int]:
        with self._lock:
            return self._synced.get(name)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._synced)


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str, name: str) -> List[RemoteRecord]:
        """Return every record for exactly `name` in the zone."""
        pass

    @abstractmethod
    def create_record(self, zone_id: str, record: DNSRecordRequest) -> None:
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, record: DNSRecordRequest) -> None:
        pass


def _format_cf_errors(envelope: Any) -> List[str]:
    if not isinstance(envelope, dict):
        return []
    errors = envelope.get("errors") or []
    if not isinstance(errors, list):
        return []
    return [
        f"{e.get('code')}: {e.get('message')}" if isinstance(e, dict) else str(e) for e in errors
    ]


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 REST API provider."""

    def __init__(
        self,
        token: str,
        email: str = "",
        *,
        base_url: str = CLOUDFLARE_API_URL,
        timeout_seconds: float = CLOUDFLARE_TIMEOUT_SECONDS,
    ):
        token = (token or "").strip()
        if not token:
            raise ValueError("missing Cloudflare API token")
        email = (email or "").strip()

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if email:
            self._session.headers["X-Auth-Email"] = email
            self._session.headers["X-Auth-Key"] = token
        else:
            self._session.headers["Authorization"] = f"Bearer {token}"

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        logger.log(VERBOSE, f"Querying Cloudflare API: {method} {url}")
        response = self._session.request(
            method, url, params=params, json=payload, timeout=self._timeout
        )

        try:
            envelope = response.json()
        except ValueError:
            envelope = None
        errors = _format_cf_errors(envelope)

        if response.status_code >= 400:
            detail = "; ".join(errors) if errors else response.text
            raise CloudflareAPIError(
                f"http status {response.status_code}: {detail}",
                status_code=response.status_code,
                errors=errors,
            )
        if not isinstance(envelope, dict):
            raise CloudflareAPIError(
                f"malformed Cloudflare response: {response.text}",
                status_code=response.status_code,
            )
        if not envelope.get("success"):
            raise CloudflareAPIError(
                "; ".join(errors) or "request unsuccessful",
                status_code=response.status_code,
                errors=errors,
            )

        logger.log(VERBOSE, f"Cloudflare API response: {method} {url} -> {response.status_code}")
        return envelope.get("result")

    def list_records(self, zone_id: str, name: str) -> List[RemoteRecord]:
        result = self._request("GET", f"/zones/{zone_id}/dns_records", params={"name": name})
        if not isinstance(result, list):
            raise CloudflareAPIError(
                f"expected a list of records, got {type(result).__name__}"
            )
        return [
            RemoteRecord(id=str(r.get("id") or ""), content=str(r.get("content") or ""))
            for r in result
            if isinstance(r, dict)
        ]

    def create_record(self, zone_id: str, record: DNSRecordRequest) -> None:
        self._request("POST", f"/zones/{zone_id}/dns_records", payload=record.to_payload())

    def update_record(self, zone_id: str, record_id: str, record: DNSRecordRequest) -> None:
        self._request(
            "PUT", f"/zones/{zone_id}/dns_records/{record_id}", payload=record.to_payload()
        )


# =============================================================================
# Traefik Router Polling
# =============================================================================


def fetch_traefik_routers(
    session: requests.Session,
    base_url: str,
    *,
    verify: Any = True,
    timeout: float = TRAEFIK_TIMEOUT_SECONDS,
) -> Tuple[Optional[List[TraefikRouter]], int, str]:
    """Fetch ``/api/http/routers``.

    Returns ``(routers, status, body)``. A non-200 status is not an error:
    routers is None and the raw body is returned for the caller to log. A 200
    response that is not a JSON list raises TraefikDecodeError. Transport
    failures raise requests exceptions.
    """
    url = f"{base_url.rstrip('/')}/api/http/routers"
    response = session.get(url, timeout=timeout, verify=verify)
    body = response.text
    if response.status_code != 200:
        return None, response.status_code, body

    try:
        raw = json.loads(body)
    except ValueError as e:
        raise TraefikDecodeError(
            f"failed to decode JSON from Traefik: {e}", status_code=response.status_code, body=body
        ) from e
    if not isinstance(raw, list):
        raise TraefikDecodeError(
            f"expected a JSON list from Traefik, got {type(raw).__name__}",
            status_code=response.status_code,
            body=body,
        )

    routers: List[TraefikRouter] = []
    for item in raw:
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-dict router entry: {item}")
            continue
        routers.append(
            TraefikRouter(
                name=str(item.get("name") or ""),
                rule=str(item.get("rule") or ""),
                status=str(item.get("status") or ""),
            )
        )
    return routers, response.status_code, body


class TraefikPoller:
    """Periodically turns Traefik's router table into a priority-2 mapping."""

    def __init__(
        self,
        *,
        poll_url: str,
        poll_seconds: int,
        included_hosts: Sequence[re.Pattern] = (),
        excluded_hosts: Sequence[re.Pattern] = (),
        verify: Any = True,
        session: Optional[requests.Session] = None,
    ):
        self.poll_url = poll_url
        self.poll_seconds = poll_seconds
        self.included_hosts = list(included_hosts) or [re.compile(".*")]
        self.excluded_hosts = list(excluded_hosts)
        self._verify = verify
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "Traefik"

    def _is_valid_host(self, host: str) -> bool:
        if not _is_matching(host, self.included_hosts):
            logger.debug(f"Traefik host {host}: no include pattern matches")
            return False
        if _is_matching(host, self.excluded_hosts):
            logger.debug(f"Traefik host {host}: matches an exclude pattern")
            return False
        return True

    def check_traefik(self) -> Dict[str, int]:
        mappings: Dict[str, int] = {}
        logger.log(VERBOSE, f"Querying Traefik routers from {self.poll_url}")
        try:
            routers, status, body = fetch_traefik_routers(
                self._session, self.poll_url, verify=self._verify
            )
        except (requests.exceptions.RequestException, TraefikDecodeError) as e:
            logger.error(f"failed to poll traefik routers: {e}")
            return mappings

        if routers is None:
            logger.error(f"Traefik API returned error {status}: {body}")
            return mappings

        for router in routers:
            if router.status != "enabled" or not router.name:
                continue
            if "Host" not in router.rule:
                continue
            for host in parse_traefik_v2_rule(router.rule):
                if not self._is_valid_host(host):
                    continue
                logger.log(VERBOSE, f"Found Traefik Router Name: {router.name} with Hostname {host}")
                mappings[host] = PRIORITY_TRAEFIK
        return mappings

    def run(self, stop_event: threading.Event, on_mappings: Callable[[Dict[str, int]], None]) -> None:
        logger.info(f"Starting Traefik poller: every {self.poll_seconds}s from {self.poll_url}")
        while not stop_event.wait(self.poll_seconds):
            run_with_recover("traefik-poller", lambda: on_mappings(self.check_traefik()))
        logger.info("Traefik poller stopped")


# =============================================================================
# Docker Discovery
# =============================================================================


def create_docker_client(settings: Settings) -> docker.DockerClient:
    """Connect to Docker from the environment, adding TLS options when configured."""
    docker_host = os.getenv("DOCKER_HOST", "").strip() or "unix:///var/run/docker.sock"
    scheme = urlparse(docker_host).scheme
    wants_tls = settings.docker_ca_cert_file or settings.docker_insecure_skip_verify
    if scheme in ("tcp", "https") and wants_tls:
        tls_config = docker.tls.TLSConfig(
            ca_cert=settings.docker_ca_cert_file or None,
            verify=not settings.docker_insecure_skip_verify,
        )
        return docker.DockerClient(base_url=docker_host, tls=tls_config, timeout=DOCKER_TIMEOUT_SECONDS)
    return docker.from_env(timeout=DOCKER_TIMEOUT_SECONDS)


def _labels_of(attrs: Mapping[str, Any], *path: str) -> Dict[str, str]:
    node: Any = attrs
    for key in path:
        if not isinstance(node, Mapping):
            return {}
        node = node.get(key)
    return dict(node) if isinstance(node, Mapping) else {}


class DockerDiscovery:
    """Finds Traefik hostnames in container and swarm service labels."""

    def __init__(
        self,
        client: docker.DockerClient,
        *,
        traefik_version: str = "2",
        swarm_mode: bool = False,
        filter_label: re.Pattern = re.compile("traefik.constraint"),
        filter_value: Optional[re.Pattern] = None,
    ):
        self._api = client.api
        self.traefik_version = traefik_version
        self.swarm_mode = swarm_mode
        self.filter_label = filter_label
        self.filter_value = filter_value

    def matches_filter(self, labels: Mapping[str, str]) -> bool:
        if self.filter_value is None:
            return True
        for key, value in labels.items():
            if self.filter_label.search(key) and self.filter_value.search(str(value)):
                return True
        return False

    def check_labels(self, kind: str, entity_id: str, labels: Mapping[str, str]) -> Dict[str, int]:
        """Priority-1 mapping for one entity's labels."""
        mappings: Dict[str, int] = {}
        if not self.matches_filter(labels):
            logger.debug(f"Skipping {kind} {entity_id}: label filter does not match")
            return mappings

        for key, value in labels.items():
            if self.traefik_version == "1":
                if not _V1_RULE_LABEL_RE.match(key):
                    continue
                hosts = parse_traefik_v1_host_rule(value)
            else:
                if not _V2_RULE_LABEL_RE.match(key) or "Host" not in str(value):
                    continue
                hosts = parse_traefik_v2_rule(value)
            for host in hosts:
                logger.log(VERBOSE, f"Found {kind} ID: {entity_id} with Hostname {host}")
                mappings[host] = PRIORITY_DOCKER
        return mappings

    def _service_labels(self, service: Mapping[str, Any]) -> Dict[str, str]:
        if self.traefik_version == "1":
            return _labels_of(service, "Spec", "TaskTemplate", "ContainerSpec", "Labels")
        return _labels_of(service, "Spec", "Labels")

    def check_container(self, container_id: str) -> Dict[str, int]:
        attrs = self._api.inspect_container(container_id)
        return self.check_labels(
            "Container", attrs.get("Id", container_id), _labels_of(attrs, "Config", "Labels")
        )

    def check_service(self, service_id: str) -> Dict[str, int]:
        service = self._api.inspect_service(service_id)
        return self.check_labels("Service", service_id, self._service_labels(service))

    def get_initial_mappings(self) -> Dict[str, int]:
        """Scan every running container (and service in swarm mode).

        Raises DiscoveryError when listing fails; a single failed inspection is
        logged and skipped.
        """
        mappings: Dict[str, int] = {}
        try:
            containers = self._api.containers()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise DiscoveryError(f"failed to list containers: {e}") from e

        for summary in containers:
            container_id = summary.get("Id", "")
            try:
                add_to_mappings(mappings, self.check_container(container_id))
            except (DockerException, requests.exceptions.RequestException) as e:
                logger.warning(f"Skipping container {container_id}: inspect failed: {e}")

        if self.swarm_mode:
            try:
                services = self._api.services()
            except (DockerException, requests.exceptions.RequestException) as e:
                raise DiscoveryError(f"failed to list services: {e}") from e
            for service in services:
                service_id = service.get("ID", "")
                add_to_mappings(
                    mappings, self.check_labels("Service", service_id, self._service_labels(service))
                )

        return mappings

    def process_event(self, event: Mapping[str, Any]) -> Dict[str, int]:
        """Mapping for a single lifecycle event; empty for irrelevant events."""
        event_type = event.get("Type")
        action = event.get("Action")
        actor_id = (event.get("Actor") or {}).get("ID", "")

        if event_type == "container" and action == "start":
            if not actor_id:
                logger.debug("Skip container event without id")
                return {}
            try:
                return self.check_container(actor_id)
            except (DockerException, requests.exceptions.RequestException) as e:
                logger.warning(f"Skipping started container {actor_id}: inspect failed: {e}")
                return {}

        if self.swarm_mode and event_type == "service" and action == "update":
            if not actor_id:
                logger.debug("Skip service update event without Actor.ID")
                return {}
            try:
                return self.check_service(actor_id)
            except (DockerException, requests.exceptions.RequestException) as e:
                logger.warning(f"Skipping updated service {actor_id}: inspect failed: {e}")
                return {}

        return {}


# =============================================================================
# Docker Event Watcher
# =============================================================================


class WatcherState(Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class DockerEventWatcher:
    """Long-lived consumer of Docker container/service events.

    CONNECTING opens a filtered stream from the cursor, bounded by an
    ``until`` a window ahead so the daemon ends it even when nothing happens.
    STREAMING handles events one at a time. A stream that reaches the end of
    its window reconnects straight away from there; any other error or close
    goes through BACKOFF, a fixed delay. The only ways to STOPPED are the
    stop event or stop().
    """

    def __init__(
        self,
        client: docker.DockerClient,
        discovery: DockerDiscovery,
        on_mappings: Callable[[Dict[str, int]], None],
        *,
        stop_event: threading.Event,
        backoff_seconds: float = 2.0,
        window_seconds: int = DOCKER_EVENT_WINDOW_SECONDS,
        since: Optional[int] = None,
    ):
        self._api = client.api
        self._discovery = discovery
        self._on_mappings = on_mappings
        self._stop_event = stop_event
        self._backoff_seconds = backoff_seconds
        self._window_seconds = window_seconds
        self.cursor: int = int(time.time()) if since is None else since
        self.state = WatcherState.CONNECTING
        self._stream: Any = None
        self._until = 0
        self._stream_lock = threading.Lock()

    def run(self) -> None:
        logger.info("Starting Docker event watcher")
        while True:
            if self._stop_event.is_set():
                self.state = WatcherState.STOPPED

            if self.state is WatcherState.CONNECTING:
                self._connect()
            elif self.state is WatcherState.STREAMING:
                self._consume()
            elif self.state is WatcherState.BACKOFF:
                self._backoff()
            else:
                logger.info("Docker event watcher stopped")
                return

    def stop(self) -> None:
        self._stop_event.set()
        with self._stream_lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def _connect(self) -> None:
        until = max(int(time.time()) + self._window_seconds, self.cursor)
        logger.debug(f"Subscribing to Docker events since {self.cursor} until {until}")
        try:
            stream = self._api.events(
                since=self.cursor, until=until, filters=DOCKER_EVENT_FILTERS, decode=True
            )
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.error(f"docker event watcher error: {e}")
            self.state = WatcherState.BACKOFF
            return

        # stop() sets the event before taking the lock, so a stream published
        # here is either seen by stop() or closed below, never both.
        with self._stream_lock:
            if not self._stop_event.is_set():
                self._stream = stream
                self._until = until
                self.state = WatcherState.STREAMING
                return
        stream.close()
        self.state = WatcherState.STOPPED

    def _consume(self) -> None:
        stream = self._stream
        if stream is None:
            self.state = WatcherState.STOPPED
            return
        window_ended = False
        try:
            for event in stream:
                if self._stop_event.is_set():
                    break
                run_with_recover("docker-event-watch", lambda: self.handle_event(event))
            else:
                # The daemon closes the stream once its clock passes `until`;
                # allow a second of skew against the local clock.
                window_ended = time.time() + 1 >= self._until
                if window_ended:
                    logger.debug(f"Docker event window ended at {self._until}, resubscribing")
                elif not self._stop_event.is_set():
                    logger.warning("Docker event stream closed, reconnecting")
        except Exception as e:
            # Read errors surface from requests, urllib3 or the raw socket.
            if not self._stop_event.is_set():
                logger.error(f"docker event watcher error: {e}")
        finally:
            with self._stream_lock:
                owned = self._stream is stream
                if owned:
                    self._stream = None
            if owned:
                stream.close()

        if self._stop_event.is_set():
            self.state = WatcherState.STOPPED
        elif window_ended:
            self.cursor = max(self.cursor, self._until)
            self.state = WatcherState.CONNECTING
        else:
            self.state = WatcherState.BACKOFF

    def _backoff(self) -> None:
        if self._stop_event.wait(self._backoff_seconds):
            self.state = WatcherState.STOPPED
        else:
            self.state = WatcherState.CONNECTING

    def handle_event(self, event: Mapping[str, Any]) -> None:
        event_time = event.get("time")
        if isinstance(event_time, int) and event_time > self.cursor:
            self.cursor = event_time
        mappings = self._discovery.process_event(event)
        if mappings:
            self._on_mappings(mappings)


# =============================================================================
# Core Syncer
# =============================================================================


def is_domain_excluded(name: str, domain: DomainConfig) -> bool:
    for sub in domain.excluded_sub_domains:
        if f"{sub}.{domain.name}" in name:
            return True
    return False


class CompanionSyncer:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        domains: Sequence[DomainConfig],
        state: Optional[SyncedState] = None,
        record_type: str = "CNAME",
        dry_run: bool = False,
        refresh_entries: bool = False,
    ):
        self.dns_provider = dns_provider
        self.domains = list(domains)
        self.state = state if state is not None else SyncedState()
        self.record_type = record_type
        self.dry_run = dry_run
        self.refresh_entries = refresh_entries

    def sync_mappings(self, mappings: Mapping[str, int]) -> None:
        for name, priority in mappings.items():
            if not self.state.should_sync(name, priority):
                logger.log(VERBOSE, f"{name} already synced at priority {self.state.get(name)}")
                continue
            if self.point_domain(name):
                self.state.mark_synced(name, priority)

    def matching_domains(self, name: str) -> List[DomainConfig]:
        matched: List[DomainConfig] = []
        for dom in self.domains:
            if name == dom.target_domain:
                continue
            if dom.name not in name:
                continue
            if is_domain_excluded(name, dom):
                logger.log(VERBOSE, f"Ignoring {name} because it falls under excluded sub domain")
                continue
            matched.append(dom)
        return matched

    def point_domain(self, name: str) -> bool:
        """Reconcile one hostname against every matching domain.

        Returns True when at least one domain matched and no Cloudflare call
        failed; a failure on one domain does not stop the others.
        """
        domains = self.matching_domains(name)
        if not domains:
            logger.debug(f"{name} does not belong to any configured domain")
            return False

        ok = True
        for dom in domains:
            try:
                self._reconcile_domain(name, dom)
            except (CloudflareAPIError, requests.exceptions.RequestException) as e:
                logger.error(f"{name} sync in zone {dom.zone_id} failed: {e}")
                ok = False
        return ok

    def _reconcile_domain(self, name: str, dom: DomainConfig) -> None:
        records = self.dns_provider.list_records(dom.zone_id, name)
        data = DNSRecordRequest(
            type=self.record_type,
            name=name,
            content=dom.target_domain,
            ttl=dom.ttl,
            proxied=dom.proxied,
            comment=dom.comment,
        )

        if not records:
            logger.log(VERBOSE, f"Domain {name}: record exists=false, change required=true")
            if self.dry_run:
                logger.info(f"DRY-RUN: POST to Cloudflare {dom.zone_id}: {data.to_payload()}")
                return
            self.dns_provider.create_record(dom.zone_id, data)
            logger.info(f"Created new record: {name} to point to {dom.target_domain}")
            return

        failures: List[str] = []
        for record in records:
            if record.content == dom.target_domain and not self.refresh_entries:
                logger.log(VERBOSE, f"Existing record: {name} already points to {dom.target_domain}")
                continue
            if self.dry_run:
                logger.info(
                    f"DRY-RUN: PUT to Cloudflare {dom.zone_id}, {record.id}: {data.to_payload()}"
                )
                continue
            try:
                self.dns_provider.update_record(dom.zone_id, record.id, data)
            except (CloudflareAPIError, requests.exceptions.RequestException) as e:
                logger.error(f"{name} update record {record.id} failed: {e}")
                failures.append(record.id)
                continue
            logger.info(f"Updated existing record: {name} to point to {dom.target_domain}")

        if failures:
            raise CloudflareAPIError(f"{len(failures)} record update(s) failed for {name}")


# =============================================================================
# Companion
# =============================================================================


class Companion:
    """Wires discovery sources to the syncer and owns the background threads."""

    def __init__(
        self,
        settings: Settings,
        *,
        dns_provider: DNSProvider,
        docker_client: Optional[docker.DockerClient] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.stop_event = threading.Event()
        self.syncer = CompanionSyncer(
            dns_provider=dns_provider,
            domains=settings.domains,
            record_type=settings.record_type,
            dry_run=settings.dry_run,
            refresh_entries=settings.refresh_entries,
        )

        self.discovery: Optional[DockerDiscovery] = None
        self.watcher: Optional[DockerEventWatcher] = None
        if settings.enable_docker_poll:
            if docker_client is None:
                raise ValueError("docker polling is enabled but no docker client was given")
            self.discovery = DockerDiscovery(
                docker_client,
                traefik_version=settings.traefik_version,
                swarm_mode=settings.docker_swarm_mode,
                filter_label=settings.traefik_filter_label,
                filter_value=settings.traefik_filter,
            )
            self.watcher = DockerEventWatcher(
                docker_client,
                self.discovery,
                self.syncer.sync_mappings,
                stop_event=self.stop_event,
                backoff_seconds=settings.docker_event_backoff_seconds,
            )

        self.poller: Optional[TraefikPoller] = None
        if settings.enable_traefik_poll:
            self.poller = TraefikPoller(
                poll_url=settings.traefik_poll_url,
                poll_seconds=settings.traefik_poll_seconds,
                included_hosts=settings.included_hosts,
                excluded_hosts=settings.excluded_hosts,
                verify=settings.traefik_poll_verify,
                session=session,
            )

        self._threads: List[threading.Thread] = []

    def get_initial_mappings(self) -> Dict[str, int]:
        logger.debug("Starting Initialization Routines")
        mappings: Dict[str, int] = {}
        if self.discovery is not None:
            add_to_mappings(mappings, self.discovery.get_initial_mappings())
        if self.poller is not None:
            add_to_mappings(mappings, self.poller.check_traefik())
        return mappings

    def start(self) -> None:
        """Seed from a full scan, then start the poller and watcher threads."""
        initial = self.get_initial_mappings()
        logger.info(f"Initial scan found {len(initial)} hostname(s)")
        self.syncer.sync_mappings(initial)

        if self.poller is not None:
            poller = self.poller
            self._threads.append(
                threading.Thread(
                    target=poller.run,
                    args=(self.stop_event, self.syncer.sync_mappings),
                    name="traefik-poller",
                    daemon=True,
                )
            )
        if self.watcher is not None:
            self._threads.append(
                threading.Thread(target=self.watcher.run, name="docker-event-watch", daemon=True)
            )
        for thread in self._threads:
            thread.start()

    def shutdown(self) -> None:
        logger.info("Shutting down gracefully...")
        self.stop_event.set()
        if self.watcher is not None:
            self.watcher.stop()

    def wait(self) -> None:
        while not self.stop_event.wait(1.0):
            pass
        for thread in self._threads:
            thread.join(timeout=CLOUDFLARE_TIMEOUT_SECONDS + TRAEFIK_TIMEOUT_SECONDS)


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging(os.getenv("LOG_LEVEL", "INFO"))
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    report_settings(settings)

    docker_client = None
    if settings.enable_docker_poll:
        try:
            docker_client = create_docker_client(settings)
        except DockerException as e:
            logger.error(f"Could not connect to Docker: {e}")
            logger.error(f"Known DOCKER_HOST env is '{os.getenv('DOCKER_HOST') or ''}'")
            sys.exit(1)

    companion = Companion(
        settings,
        dns_provider=CloudflareDNSProvider(settings.cf_token, settings.cf_email),
        docker_client=docker_client,
    )

    def handle_signal(signum, _frame):
        logger.info(f"Received signal {signal.Signals(signum).name}")
        companion.shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        companion.start()
    except DiscoveryError as e:
        logger.error(f"failed to get initial mappings: {e}")
        sys.exit(1)

    companion.wait()


if __name__ == "__main__":
    main()

#!/usr/bin/python3
"""
Helper library for querying a Maia (Prometheus-compatible) metrics service.

Maia sits behind OpenStack Keystone: a client authenticates with one of the
Keystone credential schemes, looks up the `metrics` endpoint in the service
catalog and then talks plain Prometheus HTTP API with an `X-Auth-Token` header.
A Prometheus server can also be queried directly (`prometheus_url`), in which
case no authentication takes place.

Nothing in this module performs network calls at import time; `maia_cli.py` is
the command-line front end.
"""
import logging
import os
import re
import sys
import urllib.parse
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

import requests

_VERSION = 1.0

logger = logging.getLogger("maia")

JSON = "application/json"
PLAIN_TEXT = "text/plain"

AUTH_TYPES = ("password", "token", "v3applicationcredential")
METRIC_NAME_LABEL = "__name__"
AUTH_TOKEN_HEADER = "X-Auth-Token"
GLOBAL_REGION_HEADER = "X-Global-Region"

_DEFAULT_HTTP_TIMEOUT = (10.0, 300.0)
_DEFAULT_SERIES_WINDOW = timedelta(hours=3)
_STEP_LADDER = (
    timedelta(seconds=15),
    timedelta(seconds=30),
    timedelta(seconds=60),
    timedelta(seconds=90),
    timedelta(minutes=2),
    timedelta(minutes=3),
    timedelta(minutes=5),
    timedelta(minutes=10),
    timedelta(minutes=15),
    timedelta(minutes=20),
    timedelta(minutes=30),
    timedelta(hours=1),
    timedelta(hours=2),
    timedelta(hours=3),
    timedelta(hours=8),
    timedelta(hours=12),
    timedelta(hours=24),
    timedelta(days=2),
    timedelta(days=3),
    timedelta(days=7),
    timedelta(days=14),
    timedelta(days=30),
)
_UNIX_DATE_RE = re.compile(
    r"^(?P<head>[A-Za-z]{3} [A-Za-z]{3} +\d{1,2} \d{2}:\d{2}:\d{2}) (?P<zone>\S+) (?P<year>\d{4})$"
)
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_REDACTIONS = (
    (re.compile(r"(?i)(x-(?:auth|subject)-token['\"]?\s*[:=]\s*['\"]?)[^\s'\",}]+"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(['\"](?:password|secret|token|id_token)['\"]\s*:\s*['\"])[^'\"]*"),
        r"\1[REDACTED]",
    ),
    (re.compile(r"(?i)\b((?:password|secret|token)=)[^\s&]+"), r"\1[REDACTED]"),
)


class MaiaError(Exception):
    """Base class for every error this client reports to the user."""


class ConfigurationError(MaiaError):
    """Bad, missing or ambiguous input; detected before any network call."""


class AuthenticationError(MaiaError):
    """Keystone rejected the credentials."""


class TransportError(MaiaError):
    """Network or I/O failure talking to Keystone or the metrics backend."""


class BackendError(MaiaError):
    """The metrics backend answered with a non-200 status."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class BackendUnavailableError(BackendError):
    """HTTP 503 from the metrics backend."""


class DecodeError(MaiaError):
    """The backend payload does not have the expected shape."""


class UnexpectedContentTypeError(MaiaError):
    pass


class UnsupportedFormatError(MaiaError):
    pass


class TemplateError(MaiaError):
    pass


def configure_logging(level="WARNING", force: bool = False) -> None:
    """
    Route the `maia` logger to stderr so stdout stays machine-readable.

    `level` accepts a logging level name or number. `MAIA_DEBUG=1` in the
    environment always enables DEBUG.
    """
    if os.getenv("MAIA_DEBUG") == "1":
        level = "DEBUG"
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ConfigurationError(f"invalid log level: {level}")
        level = resolved
    if force or not logger.handlers:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level)


def redact_sensitive_text(text) -> str:
    """Mask tokens, passwords and secrets before text reaches logs or the terminal."""
    cooked = str(text or "")
    for pattern, repl in _REDACTIONS:
        cooked = pattern.sub(repl, cooked)
    return cooked


def insecure_requested() -> bool:
    # Deliberately not the generic DEBUG variable.
    return os.getenv("MAIA_INSECURE") == "1"


# --- time helpers -------------------------------------------------------------


def parse_time(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp, falling back to the Unix `date` format
    (`Mon Jan  2 15:04:05 MST 2006`). Zone abbreviations of the Unix format are
    treated as UTC.
    """
    raw = (value or "").strip()
    if not raw:
        raise ConfigurationError("empty timestamp")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = None
    if parsed is not None and "T" in raw.upper() and parsed.tzinfo is not None:
        return parsed

    m = _UNIX_DATE_RE.match(raw)
    if m:
        try:
            parsed = datetime.strptime(
                f"{m.group('head')} {m.group('year')}", "%a %b %d %H:%M:%S %Y"
            )
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed.replace(tzinfo=timezone.utc)
    raise ConfigurationError(f"invalid timestamp (expected RFC3339 or Unix date format): {value}")


def format_rfc3339(ts: datetime, tz=None, *, fractional: bool = False) -> str:
    """
    Render `ts` as RFC 3339 in time zone `tz` (local time when None).

    A zero UTC offset is written as `Z`. With `fractional`, sub-second digits are
    included with trailing zeros trimmed.
    """
    local = ts.astimezone(tz)
    out = local.strftime("%Y-%m-%dT%H:%M:%S")
    if fractional and local.microsecond:
        out += "." + f"{local.microsecond:06d}".rstrip("0")
    offset = local.utcoffset() or timedelta(0)
    if not offset:
        return out + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    hours, minutes = divmod(abs(total) // 60, 60)
    return f"{out}{sign}{hours:02d}:{minutes:02d}"


def default_time_range(start: str, end: str, *, now: datetime | None = None) -> tuple[str, str]:
    """
    Fill in a missing range: `end` defaults to now, `start` to three hours
    before `end`. Given bounds are validated but passed on as written.
    """
    s, e = start or "", end or ""
    if not e:
        e = format_rfc3339(now or datetime.now(timezone.utc), timezone.utc)
    if not s:
        s = format_rfc3339(parse_time(e) - _DEFAULT_SERIES_WINDOW, timezone.utc)
    parse_time(s)
    parse_time(e)
    return s, e


def select_step(start: str, end: str) -> timedelta:
    """
    Pick a range-query step yielding roughly ten values: the smallest ladder
    entry strictly greater than a tenth of the range.
    """
    target = (parse_time(end) - parse_time(start)) / 10
    for size in _STEP_LADDER:
        if size > target:
            return size
    return target


def format_seconds(value: timedelta | None) -> str:
    """The backend only accepts whole seconds with a unit suffix, e.g. `90s`."""
    if not value or value <= timedelta(0):
        return ""
    return f"{int(value.total_seconds())}s"


# --- credentials --------------------------------------------------------------


@dataclass(frozen=True)
class AuthScope:
    project_id: str = ""
    project_name: str = ""
    domain_id: str = ""
    domain_name: str = ""

    def is_empty(self) -> bool:
        return not (self.project_id or self.project_name or self.domain_id or self.domain_name)


@dataclass(frozen=True)
class CredentialSet:
    """Raw or normalized Keystone credentials; `domain_*` qualify the user."""

    identity_endpoint: str = ""
    username: str = ""
    user_id: str = ""
    password: str = ""
    domain_id: str = ""
    domain_name: str = ""
    token: str = ""
    application_credential_id: str = ""
    application_credential_name: str = ""
    application_credential_secret: str = ""
    scope: AuthScope | None = None
    region: str = ""

    def __repr__(self) -> str:
        shown = []
        for name in ("identity_endpoint", "username", "user_id", "domain_id", "domain_name"):
            shown.append(f"{name}={getattr(self, name)!r}")
        for name in ("password", "token", "application_credential_secret"):
            shown.append(f"{name}={'***' if getattr(self, name) else ''!r}")
        shown.append(f"application_credential_id={self.application_credential_id!r}")
        shown.append(f"application_credential_name={self.application_credential_name!r}")
        shown.append(f"scope={self.scope!r}")
        return f"CredentialSet({', '.join(shown)})"


@dataclass
class AuthContext:
    """What Keystone told us about the token; only used for diagnostics."""

    token: str
    user_id: str = ""
    user_name: str = ""
    project_id: str = ""
    project_name: str = ""
    domain_id: str = ""
    roles: list[str] = field(default_factory=list)

    def describe(self) -> dict:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "domain_id": self.domain_id,
            "roles": list(self.roles),
        }


def resolve_credentials(credentials: CredentialSet, auth_type: str = "") -> CredentialSet:
    """
    Normalize `credentials` for the selected auth type.

    Fields of the other schemes are cleared so Keystone only ever sees one
    identity method. Missing or ambiguous input raises ConfigurationError.
    """
    c = credentials
    if not auth_type:
        auth_type = "password"
        logger.info("Authentication type defaults to %s", auth_type)

    if auth_type == "password":
        if not c.password:
            raise ConfigurationError("you must specify --os-password")
        if not c.username and not c.user_id:
            raise ConfigurationError("you must specify --os-username or --os-user-id")
        c = replace(
            c,
            token="",
            application_credential_id="",
            application_credential_name="",
            application_credential_secret="",
        )
    elif auth_type == "token":
        if not c.token:
            raise ConfigurationError("you must specify --os-token")
        # scope is kept to permit rescoping
        c = replace(
            c,
            password="",
            user_id="",
            username="",
            domain_id="",
            domain_name="",
            application_credential_id="",
            application_credential_name="",
            application_credential_secret="",
        )
    elif auth_type == "v3applicationcredential":
        if not c.application_credential_secret:
            raise ConfigurationError("you must specify --os-application-credential-secret")
        if c.application_credential_name and not c.username and not c.user_id:
            raise ConfigurationError(
                "you must specify --os-username or --os-user-id when using"
                " --os-application-credential-name"
            )
        if c.application_credential_id:
            c = replace(c, user_id="", username="", domain_id="", domain_name="")
        # application credentials carry their own scope
        c = replace(c, password="", token="", scope=None)
    else:
        raise ConfigurationError(
            f"unsupported --os-auth-type {auth_type!r} (expected one of: {', '.join(AUTH_TYPES)})"
        )

    if c.user_id and c.username:
        raise ConfigurationError("use either --os-user-id or --os-username but not both")
    if c.domain_id and c.domain_name:
        raise ConfigurationError(
            "use either --os-user-domain-id or --os-user-domain-name but not both"
        )
    if c.user_id and (c.domain_id or c.domain_name):
        raise ConfigurationError(
            "do not specify --os-user-domain-id or --os-user-domain-name when using"
            " --os-user-id since the user ID implies the domain"
        )
    return c


def _user_block(c: CredentialSet) -> dict:
    if c.user_id:
        return {"id": c.user_id}
    user = {"name": c.username}
    if c.domain_id:
        user["domain"] = {"id": c.domain_id}
    elif c.domain_name:
        user["domain"] = {"name": c.domain_name}
    return user


def _scope_block(scope: AuthScope | None) -> dict | None:
    if scope is None or scope.is_empty():
        return None
    if scope.project_id:
        return {"project": {"id": scope.project_id}}
    domain = {"id": scope.domain_id} if scope.domain_id else {"name": scope.domain_name}
    if scope.project_name:
        if not (scope.domain_id or scope.domain_name):
            raise ConfigurationError(
                "you must specify --os-project-domain-name or --os-domain-id"
                " when using --os-project-name"
            )
        return {"project": {"name": scope.project_name, "domain": domain}}
    return {"domain": domain}


def build_auth_request(credentials: CredentialSet) -> dict:
    """Keystone v3 `POST /auth/tokens` body for already-normalized credentials."""
    c = credentials
    if c.application_credential_secret:
        app_cred = {"secret": c.application_credential_secret}
        if c.application_credential_id:
            app_cred["id"] = c.application_credential_id
        else:
            app_cred["name"] = c.application_credential_name
            app_cred["user"] = _user_block(c)
        identity = {"methods": ["application_credential"], "application_credential": app_cred}
    elif c.token:
        identity = {"methods": ["token"], "token": {"id": c.token}}
    else:
        user = _user_block(c)
        user["password"] = c.password
        identity = {"methods": ["password"], "password": {"user": user}}

    auth = {"identity": identity}
    scope = _scope_block(c.scope)
    if scope is not None:
        auth["scope"] = scope
    return {"auth": auth}


def _normalize_identity_url(url: str) -> str:
    cooked = (url or "").strip().rstrip("/")
    if not cooked.endswith("/v3"):
        cooked += "/v3"
    return cooked


class KeystoneClient:
    """
    Minimal Keystone v3 client: issue a token and find the metrics endpoint.

    `authenticate()` is the only capability the rest of the module relies on, so
    tests can substitute any object with the same method.
    """

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        http_timeout: tuple[float, float] = _DEFAULT_HTTP_TIMEOUT,
        verify: bool = True,
        service_type: str = "metrics",
        interface: str = "public",
    ):
        self._session = session or requests.Session()
        self._http_timeout = http_timeout
        self._verify = verify
        self._service_type = service_type
        self._interface = interface

    def authenticate(self, credentials: CredentialSet) -> tuple[AuthContext, str]:
        if not credentials.identity_endpoint:
            raise ConfigurationError("you must specify --os-auth-url")
        url = _normalize_identity_url(credentials.identity_endpoint) + "/auth/tokens"
        payload = build_auth_request(credentials)
        logger.debug("Requesting token from %s", url)
        try:
            resp = self._session.post(
                url,
                json=payload,
                headers={"Accept": JSON},
                timeout=self._http_timeout,
                verify=self._verify,
            )
        except requests.RequestException as e:
            raise TransportError(f"keystone request failed: {redact_sensitive_text(e)}") from e

        with resp:
            if resp.status_code in (401, 403):
                raise AuthenticationError(
                    f"keystone rejected the credentials (HTTP {resp.status_code})"
                )
            if resp.status_code not in (200, 201):
                raise AuthenticationError(
                    f"keystone authentication failed (HTTP {resp.status_code}):"
                    f" {redact_sensitive_text(resp.text)[:500]}"
                )
            token = resp.headers.get("X-Subject-Token", "")
            try:
                body = resp.json()
            except ValueError as e:
                raise AuthenticationError(f"keystone returned invalid JSON: {e}") from e

        if not token:
            raise AuthenticationError("keystone response did not contain X-Subject-Token")
        info = body.get("token") or {} if isinstance(body, dict) else {}
        context = self._context_from_token(token, info)
        endpoint = self._catalog_endpoint(info.get("catalog") or [], credentials.region)
        return context, endpoint

    @staticmethod
    def _context_from_token(token: str, info: dict) -> AuthContext:
        user = info.get("user") or {}
        project = info.get("project") or {}
        domain = info.get("domain") or (project.get("domain") or {})
        return AuthContext(
            token=token,
            user_id=str(user.get("id", "")),
            user_name=str(user.get("name", "")),
            project_id=str(project.get("id", "")),
            project_name=str(project.get("name", "")),
            domain_id=str(domain.get("id", "")),
            roles=[str(r.get("name", "")) for r in (info.get("roles") or []) if isinstance(r, dict)],
        )

    def _catalog_endpoint(self, catalog: list, region: str = "") -> str:
        for service in catalog:
            if not isinstance(service, dict) or service.get("type") != self._service_type:
                continue
            for ep in service.get("endpoints") or []:
                if not isinstance(ep, dict) or ep.get("interface") != self._interface:
                    continue
                if region and region not in (ep.get("region"), ep.get("region_id")):
                    continue
                url = str(ep.get("url") or "")
                if url:
                    return url
        return ""


def fetch_token(
    credentials: CredentialSet,
    *,
    auth_type: str = "",
    maia_url: str = "",
    keystone=None,
    scoped_domain: str = "",
) -> tuple[CredentialSet, str, AuthContext | None]:
    """
    Authenticate unless a token and a Maia URL are already known.

    Returns the credentials carrying the issued token, the Maia URL (explicit, or
    from the service catalog) and the auth context (None on the fast path).
    """
    if scoped_domain:
        scope = credentials.scope or AuthScope()
        credentials = replace(credentials, scope=replace(scope, domain_name=scoped_domain))

    # skip token creation and catalog lookup
    if credentials.token and maia_url:
        return credentials, maia_url, None

    cooked = resolve_credentials(credentials, auth_type)
    context, endpoint = (keystone or KeystoneClient()).authenticate(cooked)
    logger.info("Authenticated against Keystone: %s", context.describe())
    cooked = replace(cooked, token=context.token)
    url = maia_url or endpoint
    if not url:
        raise ConfigurationError(
            "no metrics endpoint found in the Keystone service catalog; specify --maia-url"
        )
    return cooked, url, context


# --- metrics backend ----------------------------------------------------------


@dataclass
class BackendResponse:
    """A fully-read backend response; the connection is already released."""

    status_code: int
    reason: str = ""
    headers: dict = field(default_factory=dict)
    body: bytes = b""
    read_error: str = ""

    @property
    def status(self) -> str:
        return f"{self.status_code} {self.reason}".strip()

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return str(v)
        return ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _is_valid_url(url: str) -> bool:
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class PrometheusClient:
    """
    Issues Prometheus HTTP API calls against a Maia or Prometheus base URL.

    `headers` are attached to every request (auth token, region marker). Every
    call returns a BackendResponse whose body has already been read.
    """

    def __init__(
        self,
        url: str,
        headers: dict | None = None,
        *,
        federate_url: str = "",
        proxy: str = "",
        http_timeout: tuple[float, float] = _DEFAULT_HTTP_TIMEOUT,
        verify: bool = True,
        session: requests.Session | None = None,
    ):
        if not _is_valid_url(url):
            raise ConfigurationError(f"invalid URL: {url}")
        if federate_url and not _is_valid_url(federate_url):
            raise ConfigurationError(f"invalid federate URL: {federate_url}")
        self._url = urllib.parse.urlsplit(url)
        self._federate_url = urllib.parse.urlsplit(federate_url) if federate_url else self._url
        self._headers = dict(headers or {})
        self._http_timeout = http_timeout
        self._verify = verify
        self._session = session or requests.Session()
        if proxy:
            if not _is_valid_url(proxy):
                raise ConfigurationError(f"could not set proxy: {proxy}")
            self._session.proxies.update({"http": proxy, "https": proxy})

    @property
    def headers(self) -> dict:
        return dict(self._headers)

    def query(self, query: str, time: str = "", timeout: str = "", accept: str = JSON):
        url = self.build_url("/api/v1/query", {"query": query, "time": time, "timeout": timeout})
        return self._send("GET", url, accept=accept)

    def query_range(
        self, query: str, start: str, end: str, step: str, timeout: str = "", accept: str = JSON
    ):
        url = self.build_url(
            "/api/v1/query_range",
            {"query": query, "start": start, "end": end, "step": step, "timeout": timeout},
        )
        return self._send("GET", url, accept=accept)

    def series(self, match: list[str], start: str, end: str, accept: str = JSON):
        url = self.build_url("/api/v1/series", {"match[]": match, "start": start, "end": end})
        return self._send("GET", url, accept=accept)

    def label_values(self, name: str, accept: str = JSON):
        path = "/api/v1/label/" + urllib.parse.quote(name, safe="") + "/values"
        return self._send("GET", self.build_url(path, {}), accept=accept)

    def labels(self, start: str = "", end: str = "", match: list[str] | None = None, accept: str = JSON):
        url = self.build_url("/api/v1/labels", {"start": start, "end": end, "match[]": match or []})
        return self._send("GET", url, accept=accept)

    def federate(self, selectors: list[str], accept: str = PLAIN_TEXT):
        return self._send("GET", self.build_url("/federate", {"match[]": selectors}), accept=accept)

    def delegate_request(self, method: str, url: str, body=None, accept: str = ""):
        """Forward a request for some Maia URL to the backing server."""
        return self._send(method, self.map_url(url), body=body, accept=accept)

    def build_url(self, path: str, params: dict) -> str:
        base = self._federate_url if path == "/federate" else self._url
        query: list[tuple[str, str]] = []
        for k in sorted(params):
            v = params[k]
            if isinstance(v, str):
                if v != "":
                    query.append((k, v))
            else:
                query.extend((k, s) for s in v)
        return urllib.parse.urlunsplit(
            (base.scheme, base.netloc, base.path.rstrip("/") + path, urllib.parse.urlencode(query), "")
        )

    def map_url(self, url: str) -> str:
        """Point `url` at the backing server: swap scheme/host/credentials, drop the query."""
        parsed = urllib.parse.urlsplit(url)
        return urllib.parse.urlunsplit(
            (self._url.scheme, self._url.netloc, parsed.path, "", parsed.fragment)
        )

    def _send(self, method: str, url: str, *, body=None, accept: str = "") -> BackendResponse:
        if not _is_valid_url(url):
            raise ConfigurationError(f"invalid URL: {url}")
        headers = dict(self._headers)
        if accept:
            headers["Accept"] = accept

        logger.debug("Forwarding request to API: %s", url)
        try:
            resp = self._session.request(
                method=method,
                url=url,
                data=body,
                headers=headers,
                timeout=self._http_timeout,
                verify=self._verify,
                stream=True,
            )
        except requests.RequestException as e:
            logger.debug("Request failed: %s", redact_sensitive_text(e))
            raise TransportError(f"request to {url} failed: {redact_sensitive_text(e)}") from e

        with resp:
            out = BackendResponse(
                status_code=resp.status_code,
                reason=resp.reason or "",
                headers=dict(resp.headers),
            )
            try:
                out.body = resp.content
            except requests.RequestException as e:
                out.read_error = redact_sensitive_text(e)
        return out


def check_response(resp: BackendResponse, *, use_global: bool = False) -> BackendResponse:
    """
    Pass 200 responses through, raise a BackendError describing anything else.

    For 503 the body is echoed only with the global backend flag; without it a
    non-empty body still yields the generic status message.
    """
    code = resp.status_code
    if code == 200:
        if resp.read_error:
            raise TransportError(
                f"server responded with status {code} but the body could not be read:"
                f" {resp.read_error}"
            )
        return resp

    if code == 503:
        prefix = "global keystone backend unavailable" if use_global else "service unavailable"
        if resp.read_error:
            raise BackendUnavailableError(
                f"{prefix} (HTTP {code}) - failed to read response body: {resp.read_error}", code
            )
        if resp.body:
            if use_global:
                raise BackendUnavailableError(f"{prefix}: {resp.text}", code)
            raise BackendUnavailableError(
                f"server failed with status: {resp.status} ({code})", code
            )
        raise BackendUnavailableError(f"{prefix} (HTTP {code})", code)

    raise BackendError(f"server failed with status: {resp.status} ({code})", code)


class BackendSession:
    """
    Lazily builds the one PrometheusClient a command uses.

    With `prometheus_url` the server is queried directly. Otherwise credentials
    are resolved against Keystone (`credentials.identity_endpoint`) and the Maia
    URL is taken from `maia_url` or the service catalog.
    """

    def __init__(
        self,
        *,
        credentials: CredentialSet | None = None,
        auth_type: str = "",
        scoped_domain: str = "",
        maia_url: str = "",
        prometheus_url: str = "",
        federate_url: str = "",
        use_global: bool = False,
        proxy: str = "",
        http_timeout: tuple[float, float] = _DEFAULT_HTTP_TIMEOUT,
        verify: bool | None = None,
        keystone=None,
    ):
        self._credentials = credentials or CredentialSet()
        self._auth_type = auth_type
        self._scoped_domain = scoped_domain
        self._maia_url = maia_url
        self._prometheus_url = prometheus_url
        self._federate_url = federate_url
        self.use_global = use_global
        self._proxy = proxy
        self._http_timeout = http_timeout
        self._verify = (not insecure_requested()) if verify is None else verify
        self._keystone = keystone
        self._client: PrometheusClient | None = None
        self.context: AuthContext | None = None

    def client(self) -> PrometheusClient:
        if self._client is None:
            self._client = self._connect()
        return self._client

    def _connect(self) -> PrometheusClient:
        headers = {}
        if self._prometheus_url:
            url = self._prometheus_url
        elif self._credentials.identity_endpoint:
            keystone = self._keystone or KeystoneClient(
                http_timeout=self._http_timeout, verify=self._verify
            )
            cooked, url, self.context = fetch_token(
                self._credentials,
                auth_type=self._auth_type,
                maia_url=self._maia_url,
                keystone=keystone,
                scoped_domain=self._scoped_domain,
            )
            self._credentials = cooked
            headers[AUTH_TOKEN_HEADER] = cooked.token
        else:
            raise ConfigurationError("either --os-auth-url or --prometheus-url need to be specified")

        if self.use_global:
            headers[GLOBAL_REGION_HEADER] = "true"
        return PrometheusClient(
            url,
            headers,
            federate_url=self._federate_url,
            proxy=self._proxy,
            http_timeout=self._http_timeout,
            verify=self._verify,
        )

#!/usr/bin/python3
import argparse
import json
import math
import os
import re
import sys
import tempfile
from datetime import timedelta, timezone
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

import maia
import maia_render

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_SECRET_ENV_VARS = {"OS_PASSWORD", "OS_TOKEN", "OS_APPLICATION_CREDENTIAL_SECRET"}


def _parse_http_timeout(value: str) -> tuple[float, float]:
    """`--http-timeout READ` or `CONNECT,READ` in seconds; the connect timeout defaults to 10."""
    parts = [p.strip() for p in (value or "").split(",")]
    if len(parts) == 1:
        parts.insert(0, "10")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"invalid timeout: {value!r}")
    connect_s, read_s = (float(p) for p in parts)
    for t in (connect_s, read_s):
        if not 0 < t < math.inf:
            raise ValueError(f"timeouts must be finite and > 0: {value!r}")
    return (connect_s, read_s)


def _parse_duration(value: str) -> timedelta:
    """
    Parse durations written like `30s`, `5m` or `1h30m`.

    A bare `0` is accepted; any other number needs a unit.
    """
    raw = (value or "").strip()
    if raw == "0":
        return timedelta(0)
    if not raw:
        raise ValueError("empty duration")
    pos = 0
    total = 0.0
    while pos < len(raw):
        m = _DURATION_PART_RE.match(raw, pos)
        if not m:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    return timedelta(seconds=total)


def _parse_timezone(value: str):
    """`local` (default) renders in the machine's zone; anything else is an IANA name."""
    raw = (value or "").strip()
    if not raw or raw.lower() == "local":
        return None
    if raw.upper() in ("UTC", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown time zone: {value!r}") from e


def _find_dotenv_path(start: Path | None = None) -> Path | None:
    """
    Find a `.env` file by walking up from `start` (default: CWD).

    Mirrors `python-dotenv`'s "search parents" behavior; `maia doctor` reports
    the path it found.
    """
    cur = (start or Path.cwd()).resolve()
    for p in [cur, *cur.parents]:
        cand = p / ".env"
        if cand.is_file():
            return cand
    return None


def _cli_version() -> str:
    # Prefer the installed distribution version, fall back to the helper's `_VERSION`
    # when running directly from a checkout.
    try:
        return pkg_version("maia-client")
    except PackageNotFoundError:
        return str(maia._VERSION)


def _atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """
    Best-effort atomic file write.

    Write to a temp file in the destination directory, then replace the final path, so an
    interrupted run never leaves a half-written output file behind.
    """
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline="\n",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_fh.name)
    try:
        with tmp_fh:
            tmp_fh.write(data)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems may not support fsync; atomic replace still helps.
                pass
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_text(path: Path | None, data: str) -> None:
    if path is None:
        sys.stdout.write(data)
        sys.stdout.flush()
    else:
        _atomic_write_text(path, data, encoding="utf-8")


def _write_json(path: Path | None, payload, *, pretty: bool) -> None:
    if pretty:
        data = json.dumps(payload, indent=2, sort_keys=True)
    else:
        data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    _write_text(path, data + "\n")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    _write_text(path, "".join(f"{line}\n" for line in lines))


def _out_path(args) -> Path | None:
    out = getattr(args, "out", "")
    return None if (not out or out == "-") else Path(out)


def _opt(args, name: str, env: str = "", *, strip: bool = True) -> str:
    """A flag value, or the environment variable standing in for it."""
    value = getattr(args, name, None)
    if value is None:
        value = os.getenv(env, "") if env else ""
    return value.strip() if strip else value


def _build_credentials(args) -> maia.CredentialSet:
    scope = maia.AuthScope(
        project_id=_opt(args, "os_project_id", "OS_PROJECT_ID"),
        project_name=_opt(args, "os_project_name", "OS_PROJECT_NAME"),
        domain_id=_opt(args, "os_domain_id", "OS_DOMAIN_ID"),
        domain_name=_opt(args, "os_project_domain_name", "OS_PROJECT_DOMAIN_NAME"),
    )
    return maia.CredentialSet(
        identity_endpoint=_opt(args, "os_auth_url", "OS_AUTH_URL"),
        username=_opt(args, "os_username", "OS_USERNAME"),
        user_id=_opt(args, "os_user_id", "OS_USER_ID"),
        password=_opt(args, "os_password", "OS_PASSWORD", strip=False),
        domain_id=_opt(args, "os_user_domain_id", "OS_USER_DOMAIN_ID"),
        domain_name=_opt(args, "os_user_domain_name", "OS_USER_DOMAIN_NAME"),
        token=_opt(args, "os_token", "OS_TOKEN", strip=False),
        application_credential_id=_opt(
            args, "os_application_credential_id", "OS_APPLICATION_CREDENTIAL_ID"
        ),
        application_credential_name=_opt(
            args, "os_application_credential_name", "OS_APPLICATION_CREDENTIAL_NAME"
        ),
        application_credential_secret=_opt(
            args,
            "os_application_credential_secret",
            "OS_APPLICATION_CREDENTIAL_SECRET",
            strip=False,
        ),
        scope=None if scope.is_empty() else scope,
        region=_opt(args, "os_region_name", "OS_REGION_NAME"),
    )


def _build_session_kwargs(args) -> dict:
    kwargs = {
        "credentials": _build_credentials(args),
        "auth_type": _opt(args, "os_auth_type", "OS_AUTH_TYPE"),
        "scoped_domain": _opt(args, "os_domain_name", "OS_DOMAIN_NAME"),
        "maia_url": _opt(args, "maia_url", "MAIA_URL"),
        "prometheus_url": _opt(args, "prometheus_url", "MAIA_PROMETHEUS_URL"),
        "federate_url": _opt(args, "federate_url", "MAIA_FEDERATE_URL"),
        "proxy": _opt(args, "proxy", "MAIA_PROXY"),
        "use_global": bool(getattr(args, "use_global", False)),
    }
    if getattr(args, "http_timeout", None) is not None:
        kwargs["http_timeout"] = args.http_timeout
    return kwargs


def _build_render_spec(args, default_format: str, supported: tuple) -> maia_render.RenderSpec:
    spec = maia_render.RenderSpec(
        format=getattr(args, "format", None) or default_format,
        columns=getattr(args, "columns", None) or [],
        separator=getattr(args, "separator", " "),
        template=getattr(args, "template", "") or "",
        tz=getattr(args, "timezone", None),
    )
    if spec.format not in supported:
        raise maia.UnsupportedFormatError(
            f"unsupported --format value for {args.cmd}: {spec.format}"
            f" (expected one of: {', '.join(supported)})"
        )
    if spec.format == "template" and not spec.template:
        raise maia.ConfigurationError("missing --template parameter")
    return spec


def _configure_logging(args) -> None:
    level = "WARNING"
    if getattr(args, "log_level", ""):
        level = args.log_level
    elif getattr(args, "verbose", 0) >= 2:
        level = "DEBUG"
    elif getattr(args, "verbose", 0) == 1:
        level = "INFO"
    maia.configure_logging(level)


def _selector(args) -> str:
    return "{" + (getattr(args, "selector", "") or "") + "}"


def _cmd_snapshot(args, session, spec) -> str:
    client = session.client()
    resp = maia.check_response(client.federate([_selector(args)]), use_global=session.use_global)
    return maia_render.render_values(resp, spec)


def _cmd_query(args, session, spec) -> str:
    timeout = maia.format_seconds(args.timeout)
    if args.start or args.end:
        start, end = maia.default_time_range(args.start, args.end)
        step = args.step or maia.select_step(start, end)
        # columns of a range table are the sample times truncated to this step
        spec.step = step
        resp = session.client().query_range(
            args.expr, start, end, maia.format_seconds(step), timeout
        )
    else:
        if args.time:
            maia.parse_time(args.time)
        resp = session.client().query(args.expr, args.time or "", timeout)
    maia.check_response(resp, use_global=session.use_global)
    return maia_render.render_query_response(resp, spec)


def _cmd_series(args, session, spec) -> str:
    start, end = maia.default_time_range(args.start, args.end)
    resp = session.client().series([_selector(args)], start, end)
    maia.check_response(resp, use_global=session.use_global)
    return maia_render.render_table(resp, spec)


def _cmd_label_values(args, session, spec) -> str:
    resp = session.client().label_values(args.name)
    maia.check_response(resp, use_global=session.use_global)
    return maia_render.render_values(resp, spec)


def _cmd_metric_names(args, session, spec) -> str:
    resp = session.client().label_values(maia.METRIC_NAME_LABEL)
    maia.check_response(resp, use_global=session.use_global)
    return maia_render.render_values(resp, spec)


def _cmd_label_names(args, session, spec) -> str:
    for ts in (args.start, args.end):
        if ts:
            maia.parse_time(ts)
    match = [_selector(args)] if args.selector else []
    resp = session.client().labels(args.start or "", args.end or "", match)
    maia.check_response(resp, use_global=session.use_global)
    return maia_render.render_values(resp, spec)


# command -> (handler, default format, supported formats)
_COMMANDS = {
    "snapshot": (_cmd_snapshot, "value", ("value",)),
    "query": (_cmd_query, "json", ("json", "table", "template")),
    "series": (_cmd_series, "table", ("json", "table", "value")),
    "label-values": (_cmd_label_values, "value", ("json", "value")),
    "metric-names": (_cmd_metric_names, "value", ("json", "value")),
    "label-names": (_cmd_label_names, "value", ("json", "value")),
}


def _add_logging_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )


def _add_connection_args(p: argparse.ArgumentParser) -> None:
    # Defaults stay None so the matching OS_*/MAIA_* environment variable can fill in,
    # and secrets never show up in --help.
    g = p.add_argument_group("authentication")
    g.add_argument("--os-auth-url", default=None, help="OpenStack Authentication URL (env OS_AUTH_URL)")
    g.add_argument("--os-username", default=None, help="OpenStack Username (env OS_USERNAME)")
    g.add_argument("--os-user-id", default=None, help="OpenStack User ID (env OS_USER_ID)")
    g.add_argument("--os-password", default=None, help="OpenStack Password (env OS_PASSWORD)")
    g.add_argument(
        "--os-user-domain-name",
        default=None,
        help="OpenStack User's domain name (env OS_USER_DOMAIN_NAME)",
    )
    g.add_argument(
        "--os-user-domain-id", default=None, help="OpenStack User's domain ID (env OS_USER_DOMAIN_ID)"
    )
    g.add_argument(
        "--os-project-name", default=None, help="OpenStack Project name to scope to (env OS_PROJECT_NAME)"
    )
    g.add_argument(
        "--os-project-id", default=None, help="OpenStack Project ID to scope to (env OS_PROJECT_ID)"
    )
    g.add_argument(
        "--os-project-domain-name",
        default=None,
        help="OpenStack Project's domain name (env OS_PROJECT_DOMAIN_NAME)",
    )
    g.add_argument(
        "--os-domain-name", default=None, help="OpenStack domain name to scope to (env OS_DOMAIN_NAME)"
    )
    g.add_argument("--os-domain-id", default=None, help="OpenStack domain ID to scope to (env OS_DOMAIN_ID)")
    g.add_argument("--os-token", default=None, help="OpenStack Keystone token (env OS_TOKEN)")
    g.add_argument(
        "--os-auth-type",
        default=None,
        help="Authentication type: password, token or v3applicationcredential (env OS_AUTH_TYPE)",
    )
    g.add_argument(
        "--os-application-credential-id",
        default=None,
        help="OpenStack application credential ID (env OS_APPLICATION_CREDENTIAL_ID)",
    )
    g.add_argument(
        "--os-application-credential-name",
        default=None,
        help="OpenStack application credential name (env OS_APPLICATION_CREDENTIAL_NAME)",
    )
    g.add_argument(
        "--os-application-credential-secret",
        default=None,
        help="OpenStack application credential secret (env OS_APPLICATION_CREDENTIAL_SECRET)",
    )
    g.add_argument(
        "--os-region-name",
        default=None,
        help="Region used for the service catalog lookup (env OS_REGION_NAME)",
    )

    c = p.add_argument_group("backend")
    c.add_argument(
        "--maia-url",
        default=None,
        help="URL of the target Maia service, overrides the service catalog (env MAIA_URL)",
    )
    c.add_argument(
        "--prometheus-url",
        default=None,
        help="URL of a Prometheus server to query directly (env MAIA_PROMETHEUS_URL)",
    )
    c.add_argument(
        "--federate-url",
        default=None,
        help="URL used for snapshot (/federate) requests (env MAIA_FEDERATE_URL)",
    )
    c.add_argument("--proxy", default=None, help="HTTP(S) proxy URL (env MAIA_PROXY)")
    c.add_argument(
        "--global",
        dest="use_global",
        action="store_true",
        help="Query the global (cross-region) backend",
    )
    c.add_argument(
        "--http-timeout",
        type=_parse_http_timeout,
        default=None,
        help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: 10,300)",
    )


def _add_output_args(p: argparse.ArgumentParser, default_format: str, supported: tuple) -> None:
    p.add_argument(
        "-f",
        "--format",
        default=None,
        help=f"Output format: {', '.join(supported)} (default: {default_format})",
    )
    p.add_argument(
        "-c",
        "--columns",
        action="append",
        default=[],
        help="Columns to print (repeatable or comma-separated; default: all labels)",
    )
    p.add_argument(
        "--separator",
        default=" ",
        help="Separate columns with this string (default: <space>)",
    )
    p.add_argument(
        "--template",
        default="",
        help="Jinja2 template applied to the JSON response (only with --format template)",
    )
    p.add_argument(
        "--timezone",
        type=_parse_timezone,
        default=None,
        help="Time zone for rendered timestamps: local, UTC or an IANA name (default: local)",
    )
    p.add_argument("--out", default="", help="Output path (default: stdout)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="maia",
        description="Command-line client for Maia and Prometheus metrics.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Environment/auth sanity checks (non-destructive)")
    doctor.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    doctor.add_argument("--out", default="", help="Output path (default: stdout)")
    doctor.add_argument(
        "--probe",
        action="store_true",
        help="Authenticate and resolve the backend URL. Requires credentials.",
    )
    _add_connection_args(doctor)
    _add_logging_args(doctor)

    snapshot = sub.add_parser(
        "snapshot", help="Get a snapshot of the actual metric values for a project/domain"
    )
    snapshot.add_argument(
        "-l", "--selector", default="", help="Label selector to restrict the amount of metrics"
    )

    query = sub.add_parser("query", help="Perform a PromQL query")
    query.add_argument("expr", help="PromQL expression")
    query.add_argument(
        "--time",
        default="",
        help="Instant query: timestamp of measurement (RFC3339 or Unix format; default: now)",
    )
    query.add_argument(
        "--start",
        default="",
        help="Range query: start timestamp (RFC3339 or Unix format; default: 3h before end)",
    )
    query.add_argument(
        "--end", default="", help="Range query: end timestamp (RFC3339 or Unix format; default: now)"
    )
    query.add_argument(
        "--step",
        type=_parse_duration,
        default=None,
        help="Range query: step size (e.g. 30s; default: sized to display about 10 values)",
    )
    query.add_argument(
        "--timeout",
        type=_parse_duration,
        default=None,
        help="Query timeout (e.g. 10m; default: server setting)",
    )

    series = sub.add_parser("series", help="List measurement series for a project/domain")
    series.add_argument(
        "-l", "--selector", default="", help="Label selector to restrict the amount of series"
    )
    series.add_argument(
        "--start", default="", help="Start timestamp (RFC3339 or Unix format; default: 3h before end)"
    )
    series.add_argument("--end", default="", help="End timestamp (RFC3339 or Unix format; default: now)")

    label_values = sub.add_parser("label-values", help="Get values for a given label name")
    label_values.add_argument("name", help="Label name")

    metric_names = sub.add_parser("metric-names", help="Get the list of metric names")

    label_names = sub.add_parser("label-names", help="Get the list of label names")
    label_names.add_argument(
        "-l", "--selector", default="", help="Only consider series matching this label selector"
    )
    label_names.add_argument("--start", default="", help="Start timestamp (RFC3339 or Unix format)")
    label_names.add_argument("--end", default="", help="End timestamp (RFC3339 or Unix format)")

    for name, parser in (
        ("snapshot", snapshot),
        ("query", query),
        ("series", series),
        ("label-values", label_values),
        ("metric-names", metric_names),
        ("label-names", label_names),
    ):
        _, default_format, supported = _COMMANDS[name]
        _add_output_args(parser, default_format, supported)
        _add_connection_args(parser)
        _add_logging_args(parser)

    return p


def _doctor(args) -> int:
    required_any = ["OS_AUTH_URL", "MAIA_PROMETHEUS_URL"]
    credentials = [
        "OS_AUTH_TYPE",
        "OS_USERNAME",
        "OS_USER_ID",
        "OS_PASSWORD",
        "OS_USER_DOMAIN_NAME",
        "OS_USER_DOMAIN_ID",
        "OS_PROJECT_NAME",
        "OS_PROJECT_ID",
        "OS_PROJECT_DOMAIN_NAME",
        "OS_DOMAIN_NAME",
        "OS_DOMAIN_ID",
        "OS_TOKEN",
        "OS_APPLICATION_CREDENTIAL_ID",
        "OS_APPLICATION_CREDENTIAL_NAME",
        "OS_APPLICATION_CREDENTIAL_SECRET",
        "OS_REGION_NAME",
    ]
    optional = ["MAIA_URL", "MAIA_FEDERATE_URL", "MAIA_PROXY", "MAIA_DEBUG", "MAIA_INSECURE"]

    env_state = {}
    for k in required_any + credentials + optional:
        v = os.getenv(k)
        if k in _SECRET_ENV_VARS:
            # Never echo secrets in diagnostics.
            env_state[k] = {"set": bool(v)}
        else:
            env_state[k] = {"set": bool(v), "value": (v if v else "")}
    missing_required = [] if any(env_state[k]["set"] for k in required_any) else list(required_any)

    dotenv_path = _find_dotenv_path()
    payload = {
        "ok": len(missing_required) == 0,
        "cwd": str(Path.cwd()),
        "dotenv": str(dotenv_path) if dotenv_path else "",
        "checks": {
            "env": {
                "missing_required": missing_required,
                "required_any": required_any,
                "credentials": credentials,
                "optional": optional,
                "values": env_state,
            }
        },
    }

    kwargs = _build_session_kwargs(args)
    if not kwargs["prometheus_url"] and kwargs["credentials"].identity_endpoint:
        auth_type = kwargs["auth_type"] or "password"
        try:
            maia.resolve_credentials(kwargs["credentials"], auth_type)
            payload["checks"]["credentials"] = {"ok": True, "auth_type": auth_type}
        except maia.ConfigurationError as e:
            payload["ok"] = False
            payload["checks"]["credentials"] = {"ok": False, "auth_type": auth_type, "error": str(e)}

    if args.probe and payload["ok"]:
        try:
            session = maia.BackendSession(**kwargs)
            session.client()
            context = session.context
            payload["checks"]["probe"] = {
                "ok": True,
                "authenticated": context is not None,
                "context": context.describe() if context is not None else {},
            }
        except maia.MaiaError as e:
            payload["ok"] = False
            payload["checks"]["probe"] = {"ok": False, "error": maia.redact_sensitive_text(e)}

    out_path = _out_path(args)
    if args.format == "json":
        _write_json(out_path, payload, pretty=True)
    else:
        lines: list[str] = ["ok: true" if payload["ok"] else "ok: false"]
        if payload.get("dotenv"):
            lines.append(f"dotenv: {payload['dotenv']}")
        if missing_required:
            lines.append("missing env vars (need one of): " + ", ".join(missing_required))
        cred = payload["checks"].get("credentials")
        if cred and not cred["ok"]:
            lines.append(f"credentials: {cred['error']}")
        if args.probe:
            probe = payload["checks"].get("probe") or {}
            if probe.get("ok"):
                lines.append(f"probe: ok (authenticated={str(probe.get('authenticated')).lower()})")
            else:
                lines.append(f"probe: failed ({probe.get('error', 'skipped')})")
        _write_lines(out_path, lines)

    return 0 if payload["ok"] else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    dotenv_path = _find_dotenv_path()
    if dotenv_path is not None:
        # Real environment variables always win over the file.
        load_dotenv(dotenv_path, override=False)

    try:
        _configure_logging(args)
    except maia.ConfigurationError as e:
        sys.stderr.write(f"{e}\n")
        return 2

    if args.cmd == "doctor":
        return _doctor(args)

    handler, default_format, supported = _COMMANDS[args.cmd]
    try:
        spec = _build_render_spec(args, default_format, supported)
        session = maia.BackendSession(**_build_session_kwargs(args))
        output = handler(args, session, spec)
        _write_text(_out_path(args), output)
    except maia.MaiaError as e:
        sys.stderr.write(f"{maia.redact_sensitive_text(e)}\n")
        return 1
    except OSError as e:
        sys.stderr.write(f"failed to write output: {e}\n")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

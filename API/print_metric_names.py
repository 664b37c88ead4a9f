#!/usr/bin/python3
import sys


def main(prometheus_url: str = "") -> int:
    """Print every metric name known to the backend, one per line.

    Kept as a tiny example entrypoint so other scripts (and tests) can reuse it
    without triggering network calls at import time.
    """

    # Easiest to import maia.py if it is in the same directory as this script.
    import maia
    import maia_render

    if maia._VERSION < 1.0:
        sys.stderr.write(f"requires maia.py VERSION 1.0; current version: {maia._VERSION}\n")
        return 2

    # Talk to a Prometheus server directly:
    # session = maia.BackendSession(prometheus_url="http://localhost:9090")
    #
    # Or authenticate against Keystone with password credentials:
    # creds = maia.CredentialSet(identity_endpoint="https://keystone.example.com/v3",
    #                            username="me", domain_name="Default", password="...")
    # session = maia.BackendSession(credentials=creds)
    session = maia.BackendSession(prometheus_url=prometheus_url or "http://localhost:9090")

    resp = session.client().label_values(maia.METRIC_NAME_LABEL)
    maia.check_response(resp, use_global=session.use_global)
    sys.stdout.write(maia_render.render_values(resp, maia_render.RenderSpec(format="value")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(*sys.argv[1:2]))

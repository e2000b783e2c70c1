"""Module entrypoint for ``python -m incident_diagnosis``."""

from __future__ import annotations

from incident_diagnosis.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())

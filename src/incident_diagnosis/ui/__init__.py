"""Command-line surface: argparse router and plain-text renderer."""

from incident_diagnosis.ui.cli import build_parser, run_cli
from incident_diagnosis.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIRenderer", "build_parser", "create_renderer", "run_cli"]

"""Version banner for the components."""

import sys


def print_version(component_name: str, version: str) -> None:
    """Write the component's version to standard error."""
    sys.stderr.write(f"{component_name} version: {version}\n")
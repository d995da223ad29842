"""
Gantry CLI.

Usage:
    gantry serve app:app --port 9000
    gantry migrate app:app
    gantry routes app:app
    gantry cleanup app:app User

``APP`` is a ``module:attribute`` path to a ``Gantry`` application.
"""

__version__ = "0.1.0"
__cli_name__ = "gantry"


def main():
    from .__main__ import main as _main

    _main()

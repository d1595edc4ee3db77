"""
Loxone → InfluxDB bridge

Usage:
    python -m loxone_influx --config config/default.json
    python -m loxone_influx --config bridge.yaml --debug
"""

import sys

from .bridge import cli

if __name__ == "__main__":
    sys.exit(cli())

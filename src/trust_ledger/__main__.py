# SPDX-License-Identifier: MPL-2.0
"""Entry point for ``python -m trust_ledger``."""

from trust_ledger.cli.main import cli

if __name__ == "__main__":
    cli()

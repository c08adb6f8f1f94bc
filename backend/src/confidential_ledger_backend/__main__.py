from __future__ import annotations

import asyncio

from confidential_ledger_backend.cli import parse_args
from confidential_ledger_backend.app import App

def main():
    args = parse_args()
    app = App(args)
    asyncio.run(app.run())

if __name__ == "__main__":
    main()

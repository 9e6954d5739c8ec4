from __future__ import annotations

from workq.commands import main


if __name__ == "__main__":
    raise SystemExit(main())

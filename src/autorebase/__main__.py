from __future__ import annotations

from autorebase.cli import main


if __name__ == "__main__":
    main()

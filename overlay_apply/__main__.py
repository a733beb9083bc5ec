"""Allows running the command line tool with `python -m overlay_apply`."""

from .tool.overlay_apply import main

if __name__ == "__main__":
    main()

"""Command line tool for overlay-apply.

See `overlay-apply --help` for the available commands.
"""

"""Tests for the overlay-apply command line tool."""

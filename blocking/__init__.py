"""Blocklist settings, unlock sessions and the Blocking Bridge boundary."""

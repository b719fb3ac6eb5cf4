"""Command line tool for flux-scheduler."""

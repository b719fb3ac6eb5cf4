"""Run the flux-scheduler command line tool."""

from .tool.flux_scheduler import main

main()

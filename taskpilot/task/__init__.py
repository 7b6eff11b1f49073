"""Container task orchestration: lifecycle, command loop and commands."""

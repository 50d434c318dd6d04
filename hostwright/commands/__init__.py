"""CLI subcommands. Each module exposes a register_* function for argparse."""

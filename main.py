#!/usr/bin/env python3
"""hostwright CLI entrypoint for running from a source checkout."""

from hostwright.hostwright import main

if __name__ == "__main__":
    main()

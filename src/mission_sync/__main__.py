"""
Mission Sync - entry point for python -m mission_sync
"""

from mission_sync.cli import main

if __name__ == "__main__":
    main()

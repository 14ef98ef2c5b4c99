"""
Allow running as: python -m credrotator run
"""
from credrotator.cli.main import main

if __name__ == "__main__":
    raise SystemExit(main())

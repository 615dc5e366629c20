"""qlood entry point.

Supports: python -m qlood
"""

from .app import main

if __name__ == "__main__":
    main()

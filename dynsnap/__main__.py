"""
dynsnap package __main__ entry point.

Allows running with: python -m dynsnap
"""

from dynsnap.app.radio import main

if __name__ == "__main__":
    main()

"""Allow running as python -m pingme."""

from . import main

if __name__ == "__main__":
    main()

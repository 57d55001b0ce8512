"""Allow ``python -m barley``."""

from .cli import main

if __name__ == "__main__":
    main()

"""Allow ``python -m knowledgemcp``."""

from .server import main

if __name__ == "__main__":
    main()

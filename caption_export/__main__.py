"""Package entry point for ``python -m caption_export``."""

from caption_export.cli import main

if __name__ == "__main__":
    main()

"""Allow running as ``python -m alarm_imagegen``."""

from alarm_imagegen.cli import run

if __name__ == "__main__":
    run()

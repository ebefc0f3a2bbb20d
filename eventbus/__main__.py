"""Allow running the event bus as a module: python -m eventbus."""

from eventbus.runner import main

if __name__ == "__main__":
    main()

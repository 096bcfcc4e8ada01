"""Allow running the event bus as a module: python -m eventrail [run|replay]."""

from eventrail.runner import main

if __name__ == "__main__":
    main()

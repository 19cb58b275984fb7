"""Allow ``python -m execfunction MODULE TYPE METHOD ...``."""

from execfunction.worker import main

if __name__ == "__main__":
    main()

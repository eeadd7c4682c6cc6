"""cmd-executor 入口点。

支持: python -m cmd_executor
"""

from .app import main

if __name__ == "__main__":
    main()

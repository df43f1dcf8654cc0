"""DDT Runtime 入口点。

支持: python -m ddt_runtime
"""

from .app import main

if __name__ == "__main__":
    main()

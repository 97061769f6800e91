import sys
import os
sys.path.append(os.path.abspath(os.path.dirname(__file__)))

from cw_agent.cli import main

if __name__ == "__main__":
    main()

"""
Entry point for ``python -m fleet_simulator``
"""

from fleet_simulator.main import main

if __name__ == "__main__":
    main()

"""Run the TamperSeal API with uvicorn: ``python -m tamperseal``."""

from tamperseal.api import main

main()

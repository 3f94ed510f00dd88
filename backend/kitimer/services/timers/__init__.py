"""Timer domain services: the authoritative store and the time projector.

HTTP routes, socket handlers and CLI commands import from the submodules
here; transport concerns stay out of the state machine and the projection
math.
"""

"""auth/ -- Authentication core for AuthGate.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config for type hints in the wiring helper. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""

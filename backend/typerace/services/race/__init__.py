"""Race room domain services: coordination, readiness, ranking, text, sync.

HTTP routes and socket handlers import from here, keeping transport
concerns separated from the room state machine.
"""

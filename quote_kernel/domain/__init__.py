"""
Pure domain core: calculators, rule evaluation, state machines, token
primitives and billing decisions.  No database access.
"""

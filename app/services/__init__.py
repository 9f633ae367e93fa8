"""
NIMBUS - Services Module
Weather data, odds, settlement, cash-out and scheduling services.
"""

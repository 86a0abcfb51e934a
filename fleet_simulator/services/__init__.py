"""
Fleet services: transport, scheduling, orchestration, failures and metrics
"""

"""
Service layer: persistence and orchestration over the pure domain rules.
"""

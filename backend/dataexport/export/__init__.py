"""
Export engine.

Components, leaves first: filters -> columns -> view -> references -> sinks -> finalizer.
"""

"""Adapters layer for the custom-field engine.

Adapters implement the Port interfaces defined in the domain layer
(storage, authorization) against concrete infrastructure.
"""

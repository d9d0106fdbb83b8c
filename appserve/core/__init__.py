"""Core utilities and shared server primitives.

Modules in this package should be framework-agnostic where possible and
focused on configuration, sanitization, validation, and the startup gate.
"""

"""
Core modules for Image Relay.

This package contains credential rotation, failure classification,
request orchestration and the per-unit generation lifecycle.
"""

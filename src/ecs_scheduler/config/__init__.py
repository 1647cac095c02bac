"""
Configuration management for the ECS scheduler.

Contains Pydantic settings and mode-aware configuration that works across
local-dev, aws-mock, and aws-prod deployment modes.
"""

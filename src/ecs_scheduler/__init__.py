"""
ECS scheduler components.

Contains the cluster registry, task placement engine, capacity and service
scalers, and the rolling deployment controller for EC2-backed ECS clusters.
"""

__version__ = "0.1.0"

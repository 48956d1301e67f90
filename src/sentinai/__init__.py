"""SentinAI: autonomous operations control loop for L2 node clusters."""

__version__ = "0.1.0"

"""agentroute: route tickets to a bounded pool of agents via GitHub."""

__version__ = "0.1.0"

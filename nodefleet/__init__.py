"""nodefleet: supervises a fleet of gateway nodes.

Each node is registered with the gateway, placed into a session and kept
alive with periodic pings. Nodes run concurrently in one asyncio event loop,
each optionally bound to its own outbound proxy.

Quickstart::

    from nodefleet.config import FleetConfig
    from nodefleet.orchestrator import FleetOrchestrator

    config = FleetConfig.load("config.json")
    orchestrator = FleetOrchestrator.from_config(config)
    await orchestrator.run_forever()
"""

__version__ = "0.3.0"

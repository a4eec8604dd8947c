from dlmm_pilot.core.clients.MeteoraClient import MeteoraClient, MeteoraPair

__all__ = ["MeteoraClient", "MeteoraPair"]

from agent_gateway.config.settings import GatewaySettings, load_settings

__all__ = ["GatewaySettings", "load_settings"]

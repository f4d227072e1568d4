from utils.gateway import GatewayClient


def get_gateway() -> GatewayClient:
    return GatewayClient()

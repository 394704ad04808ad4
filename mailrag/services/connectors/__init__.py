from mailrag.services.connectors.registry import ConnectorRegistry


def build_google_registry(credentials) -> ConnectorRegistry:
    from mailrag.services.connectors.drive import DriveConnector
    from mailrag.services.connectors.gmail import GmailConnector
    from mailrag.services.connectors.google_api import GoogleApiClient

    registry = ConnectorRegistry()
    registry.register(GmailConnector(GoogleApiClient.for_gmail(credentials)))
    registry.register(DriveConnector(GoogleApiClient.for_drive(credentials)))
    return registry

"""
connectors — account storage and provider access for external services.

Provides:
  • Encrypted per-account config blobs (``accounts``, ``encryption``)
  • OAuth provider descriptions and the per-account CredentialBroker
  • Multi-instance Atlassian access with fan-out across sites
  • The default preload fetchers registered on ``fetchers.default_registry``
"""

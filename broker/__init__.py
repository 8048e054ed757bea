# broker/__init__.py
"""
Broker REST client package.

Provides:
- Settings and endpoints for the IG gateway (demo/live)
- Session types for the CST/X-SECURITY-TOKEN and OAuth auth schemes
- AuthManager, the rate-limited request pipeline, and market navigation services
- Application-level IGClient for strategies and tools
"""

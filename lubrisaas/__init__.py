"""
LubriSaaS – núcleo de entitlements y facturación para lubricentros.
"""

__version__ = "1.0.0"

"""
===============================================================================
 AVIF BACKEND PACKAGE
===============================================================================

Converts uploaded JPEG/PNG/WebP images to AVIF, optionally enhances them,
publishes the artifacts to a CDN and keeps the attachment records current.

Entry points:
-------------
    avif_backend.services.orchestrator   (BatchConverter, avif-backend CLI)
    avif_backend.routers.conversions     (HTTP surface under /avif/v1)
    avif_backend.main                    (FastAPI app)
===============================================================================
"""

__version__ = "1.0.0"

import logging

# library default: no output unless the CLI or app configures handlers
logging.getLogger("avif_backend").addHandler(logging.NullHandler())

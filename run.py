#!/usr/bin/env python3
"""Startup script."""
import os
import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    print(f"Starting trust layer API on port {port}")
    uvicorn.run(
        "trustlayer.main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )

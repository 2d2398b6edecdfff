#!/usr/bin/env python3
"""
Flask Web Server launcher script for the keywording service.
This script handles the imports properly and starts the Flask dev server.
"""
import sys
import os
import argparse

# Add the parent directory to Python path (where keywording is located)
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

if __name__ == '__main__':
    from keywording.app import configure_logging, create_app
    from keywording.config import config

    parser = argparse.ArgumentParser(
        description='Image Keywording Server')
    parser.add_argument('--host', default=config.server_host,
                        help='Host to bind the server to')
    parser.add_argument('--port', type=int, default=config.server_port,
                        help='Port to bind the server to')
    args = parser.parse_args()

    configure_logging()
    app = create_app()

    print("=" * 60)
    print("🚀 Image Keywording Server")
    print("=" * 60)
    print(f"📍 Server URL: http://{args.host}:{args.port}")
    print(f"🔧 Health Check: http://{args.host}:{args.port}/api/v1/health")
    print("=" * 60)
    print()
    print("📋 Configuration:")
    print("-" * 60)
    print(f"  API_BACKEND:           {config.api_backend}")
    print(f"  OPENROUTER_MODEL:      {config.openrouter_model}")
    print(f"  API_KEY_CONFIGURED:    {config.api_key_configured}")
    print(f"  CHUNK_SIZE:            {config.chunk_size}")
    print(f"  MAX_CONCURRENT_CHUNKS: {config.max_concurrent_chunks}")
    print(f"  RETRY_ATTEMPTS:        {config.retry_attempts}")
    print(f"  REQUEST_TIMEOUT:       {config.request_timeout}s")
    print(f"  DEBUG_LOGGING:         {config.enable_debug_logging}")
    print("-" * 60)
    print()
    print("Press Ctrl+C to stop the server")
    print()

    try:
        app.run(
            host=args.host,
            port=args.port,
            debug=config.enable_debug_logging,
            use_reloader=False
        )
    except KeyboardInterrupt:
        print("\n\n🛑 Server stopped by user")
    except Exception as e:
        print(f"\n❌ Server failed to start: {e}")
        sys.exit(1)

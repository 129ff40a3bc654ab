"""
Run the Helpdesk Sync API server with uvicorn.

Usage:
    python run.py
    python run.py --reload    # Development mode with auto-reload
    python run.py --port 8080 # Custom port

Workspaces live in process memory, so the server always runs one worker.
"""
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the Helpdesk Sync API server")
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    args = parser.parse_args()

    print("Starting Helpdesk Sync API server...")
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Reload: {args.reload}")
    print()

    uvicorn.run(
        "helpdesk_sync.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1
    )


if __name__ == "__main__":
    main()

"""Entry point for the knowledge base RAG server."""

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Knowledge base RAG server")
    parser.add_argument(
        "--embedding-provider",
        choices=["openai", "local", "hash"],
        default=None,
        help="Embedding backend (default: openai). Overrides EMBEDDING_PROVIDER env var.",
    )
    parser.add_argument(
        "--chroma-url",
        default=None,
        help="Chroma server URL (default: http://localhost:8000). Overrides CHROMA_URL env var.",
    )
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL env var.")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    args = parser.parse_args()

    if args.embedding_provider:
        os.environ["EMBEDDING_PROVIDER"] = args.embedding_provider
    if args.chroma_url:
        os.environ["CHROMA_URL"] = args.chroma_url
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    from kb_rag_server.server import app

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()

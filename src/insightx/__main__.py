"""Allow running the InsightX CLI directly: python -m insightx"""
from insightx.cli.main import cli

if __name__ == "__main__":
    cli()

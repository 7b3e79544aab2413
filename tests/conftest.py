"""Test environment: in-memory database, no background scheduler, no connector file"""
import os

os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("CONNECTORS_CONFIG_PATH", "tests/does-not-exist.json")
os.environ.setdefault("ANTHROPIC_API_KEY", "")
os.environ.setdefault("GITHUB_TOKEN", "")
os.environ.setdefault("SLACK_BOT_TOKEN", "")
os.environ.setdefault("DISCORD_BOT_TOKEN", "")

"""MCP stdio server exposing reconcile, import and world tools."""

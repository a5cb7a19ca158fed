#!/usr/bin/env python3
"""Command line runner"""
from pgstash.cli import app

if __name__ == '__main__':
    app()

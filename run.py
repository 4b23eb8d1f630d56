#!/usr/bin/env python3
"""Command line runner"""
from projsnap.cli import script_entrypoint

if __name__ == '__main__':
    script_entrypoint()

#!/usr/bin/env python3
"""
Face Identity Index - Main Entry Point

Run this file to use the command-line interface or start the API server.
"""

import sys

from face_index.main import main

if __name__ == '__main__':
    sys.exit(main())

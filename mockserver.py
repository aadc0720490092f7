#!/usr/bin/python3
# -*- coding: utf-8 -*-

import sys

from mockd.cli import main

if __name__ == "__main__":
    sys.exit(main())

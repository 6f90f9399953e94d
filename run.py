#!/usr/bin/env python3
"""Development runner"""
from backup_home.cli import main

if __name__ == '__main__':
    main(prog_name='backup-home')

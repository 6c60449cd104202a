"""
Coolify Backup
Discovers the databases and file volumes of Coolify services and
applications, backs them up into timestamped zstd snapshots, and restores
them into live containers.
"""

__version__ = '1.0.0'

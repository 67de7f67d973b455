"""
ufs2img

Build UFS2 filesystem images from PS5 game dumps (directories or archives)
by driving makefs / UFS2Tool and fuse-archive.
"""

__version__ = "1.0.0"

"""
errors.py

Exception types raised by the ufs2img modules. cli.main() turns any of these
into an error message and exit status 1.
"""


class Ufs2ImgError(Exception):
    """Base class for all fatal ufs2img errors."""


class LabelError(Ufs2ImgError):
    pass


class ConfigError(Ufs2ImgError):
    pass


class MetadataError(Ufs2ImgError):
    pass


class SourceError(Ufs2ImgError):
    pass


class MountError(Ufs2ImgError):
    pass


class MountTimeoutError(MountError):
    pass


class BuilderNotFoundError(Ufs2ImgError):
    pass


class ProbeError(Ufs2ImgError):
    pass


class BuildError(Ufs2ImgError):
    pass

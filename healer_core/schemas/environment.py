from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..utils import utcnow

UNKNOWN = "unknown"


class OSInfo(BaseModel):
    name: str = UNKNOWN
    version: str = UNKNOWN
    arch: str = UNKNOWN
    kernel: str = UNKNOWN


class ControlPanelInfo(BaseModel):
    type: str = "none"  # cpanel, plesk, directadmin, cyberpanel, none
    version: str = UNKNOWN
    web_root: Optional[str] = None


class WebServerInfo(BaseModel):
    type: str = UNKNOWN  # apache, nginx, litespeed, unknown
    version: str = UNKNOWN
    config_path: Optional[str] = None
    document_root: str = "/var/www/html"
    error_log: Optional[str] = None
    modules: List[str] = Field(default_factory=list)


class PHPInfo(BaseModel):
    version: str = UNKNOWN
    handler: str = UNKNOWN  # mod_php, php-fpm, lsapi, cgi, unknown
    ini_path: Optional[str] = None
    error_log: Optional[str] = None
    extensions: List[str] = Field(default_factory=list)


class DatabaseInfo(BaseModel):
    engine: str = UNKNOWN  # mysql, mariadb, postgresql, unknown
    version: str = UNKNOWN
    port: Optional[int] = None


class CacheLayer(BaseModel):
    type: str  # redis, memcached, opcache
    version: str = UNKNOWN
    active: bool = False


class WordPressInfo(BaseModel):
    found: bool = False
    path: Optional[str] = None
    version: str = UNKNOWN
    multisite: bool = False
    db_name: Optional[str] = None
    db_host: Optional[str] = None
    db_user: Optional[str] = None
    table_prefix: str = "wp_"


class EnvironmentSnapshot(BaseModel):
    os: OSInfo = Field(default_factory=OSInfo)
    control_panel: ControlPanelInfo = Field(default_factory=ControlPanelInfo)
    web_server: WebServerInfo = Field(default_factory=WebServerInfo)
    php: PHPInfo = Field(default_factory=PHPInfo)
    database: DatabaseInfo = Field(default_factory=DatabaseInfo)
    caches: List[CacheLayer] = Field(default_factory=list)
    collected_at: datetime = Field(default_factory=utcnow)

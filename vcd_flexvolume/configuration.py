import socket
from tempfile import gettempdir

import yaml
from plumbum import local
from plumbum.typed_env import TypedEnv

from easypy.bunch import Bunch
from easypy.caching import cached_property

from .exceptions import MissingSetting


class Config(TypedEnv):
    class Path(TypedEnv.Str):
        convert = staticmethod(local.path)

    class Float(TypedEnv.Str):
        convert = staticmethod(float)

    plugin_name = "vcd-flexvolume"
    supported_fs_types = ("ext4",)

    config_file = Path("X_VCDFV_CONFIG", default=local.path("/etc/kubernetes/vcdfv-config.yaml"))

    log_level = TypedEnv.Str("X_VCDFV_LOG_LEVEL", default="info")
    log_file = TypedEnv.Str("X_VCDFV_LOG_FILE", default="/var/log/vcd-flexvolume.log")
    node_name = TypedEnv.Str("X_VCDFV_NODE_NAME", default=socket.gethostname())

    lock_file = Path("X_VCDFV_LOCK_FILE", default=local.path(gettempdir())["lock.vcdfv.lck"])
    lock_backoff = Float("X_VCDFV_LOCK_BACKOFF", default=30.0)

    format_timeout = Float("X_VCDFV_FORMAT_TIMEOUT", default=60.0)
    default_fs_type = TypedEnv.Str("X_VCDFV_DEFAULT_FS_TYPE", default="ext4")
    meta_max_rounds = TypedEnv.Int("X_VCDFV_META_MAX_ROUNDS", default=3)
    rescan_delay = Float("X_VCDFV_RESCAN_DELAY", default=1.0)

    api_version = TypedEnv.Str("X_VCDFV_API_VERSION", default="31.0")
    http_timeout = Float("X_VCDFV_HTTP_TIMEOUT", default=60.0)
    task_poll_interval = Float("X_VCDFV_TASK_POLL_INTERVAL", default=1.0)
    task_timeout = Float("X_VCDFV_TASK_TIMEOUT", default=None)  # None - wait for the task as long as it takes

    @cached_property
    def settings(self) -> Bunch:
        """Connection settings, read from the YAML file once per Config instance"""
        with self.config_file.open("r") as f:
            return Bunch(yaml.safe_load(f) or {})

    def _required(self, key):
        value = self.settings.get(key)
        if not value:
            raise MissingSetting(field=key, source=str(self.config_file))
        return value

    @property
    def vcd_endpoint(self):
        return self._required("vcdApiEndpoint")

    @property
    def vcd_insecure(self):
        return bool(self.settings.get("vcdInsecure", False))

    @property
    def vcd_user(self):
        return self._required("vcdUser")

    @property
    def vcd_password(self):
        return self._required("vcdPassword")

    @property
    def vcd_org(self):
        return self._required("vcdOrg")

    @property
    def vcd_vdc(self):
        return self._required("vcdVdc")

    @property
    def vcd_vapp(self):
        return self._required("vcdVdcVApp")

    @property
    def manual_unmount(self):
        return bool(self.settings.get("manualUnmount", False))

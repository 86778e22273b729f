import json
import time
from pprint import pformat

import requests
from requests.exceptions import ConnectionError
from requests.utils import default_user_agent

from easypy.bunch import Bunch
from easypy.caching import cached_property
from easypy.resilience import retrying
from easypy.timing import Timer

from . import __version__
from .logging import logger
from .models import CloudDisk, VAppVm
from .exceptions import (
    ApiError,
    TaskFailed,
    TaskTimeout,
    OrgNotFound,
    VdcNotFound,
    VAppNotFound,
    VmNotFound,
    DiskNotFound,
    DuplicateDisk,
)


MIME_ORG = "application/vnd.vmware.vcloud.org"
MIME_VDC = "application/vnd.vmware.vcloud.vdc"
MIME_VAPP = "application/vnd.vmware.vcloud.vApp"
MIME_DISK = "application/vnd.vmware.vcloud.disk"
MIME_DISK_CREATE = "application/vnd.vmware.vcloud.diskCreateParams+json"
MIME_DISK_ATTACH = "application/vnd.vmware.vcloud.diskAttachOrDetachParams+json"

TASK_SUCCESS = "success"
TASK_FINISHED = {TASK_SUCCESS, "error", "aborted", "canceled"}


def get_vcd_session(config):
    return VcdSession.create(config)


def _is_type(entity, mime):
    # eg: application/vnd.vmware.vcloud.vApp+xml, but not application/vnd.vmware.vcloud.vAppTemplate+xml
    return (entity.get("type") or "").partition("+")[0] == mime


def _find_by_name(entities, name, mime=None):
    return [
        e for e in entities
        if e.get("name") == name and (mime is None or _is_type(e, mime))
    ]


class RESTSession(requests.Session):
    def __init__(self, config):
        super().__init__()
        self.config = config
        self.headers["Accept"] = f"application/*+json;version={config.api_version}"
        self.headers["User-Agent"] = f"VcdFlexVolume/{__version__} {default_user_agent()}"

    @retrying.debug(times=3, acceptable=retrying.Retry)
    def request(self, verb, url, *args, data=None, content_type=None, log_result=True, **kwargs):
        verb = verb.upper()
        if not url.startswith("http"):
            url = "/".join([self.base_url, url.strip("/")])
        logger.info(f">>> [{verb}] {url}")

        headers = kwargs.pop("headers", None) or {}
        if data is not None:
            for line in pformat(data).splitlines():
                logger.info(f"    {line}")
            kwargs["data"] = json.dumps(data)
            headers["Content-Type"] = content_type or "application/json"

        kwargs.setdefault("timeout", self.config.http_timeout)

        ret = super().request(verb, url, *args, headers=headers, **kwargs)
        if ret.status_code == 401:
            self.login()
            raise retrying.Retry("refresh token")
        if ret.status_code >= 400:
            raise ApiError(response=ret, url=url)

        logger.info(f"<<< [{verb}] {url}")
        if ret.content:
            ret = Bunch.from_dict(ret.json())
            if log_result:
                for line in pformat(ret).splitlines():
                    logger.debug(f"    {line}")
        else:
            ret = None
        logger.info(f"--- [{verb}] {url}: Done")
        return ret

    def login(self):
        raise NotImplementedError()


class VcdSession(RESTSession):
    """
    Communication with vCloud Director.
    Lookups of the organization VDC, vApp VMs and independent disks; disk create/attach/detach/update.
    Every mutating call returns a task which is awaited before returning.
    """

    def __init__(self, config):
        super().__init__(config)
        endpoint = config.vcd_endpoint.rstrip("/")
        self.base_url = endpoint if endpoint.endswith("/api") else f"{endpoint}/api"
        self.verify = not config.vcd_insecure

    @classmethod
    def create(cls, config):
        session = cls(config)
        session.login()
        ssl_verification = "enabled" if session.verify else "disabled"
        logger.info(f"vCD session has been instantiated for org {config.vcd_org!r}. SSL verification {ssl_verification}.")
        return session

    def login(self):
        url = f"{self.base_url}/sessions"
        try:
            resp = super(RESTSession, self).request(
                "POST", url, timeout=self.config.http_timeout,
                auth=(f"{self.config.vcd_user}@{self.config.vcd_org}", self.config.vcd_password),
            )
        except ConnectionError as e:
            raise ApiError(
                response=Bunch(
                    status_code=None,
                    text=f"vCloud Director at {self.config.vcd_endpoint!r} cannot be accessed. "
                         f"Please verify the specified endpoint. origin error: {e}"
                ))
        if resp.status_code >= 400:
            raise ApiError(response=resp, url=url)

        if token := resp.headers.get("X-VMWARE-VCLOUD-ACCESS-TOKEN"):
            self.headers["Authorization"] = f"Bearer {token}"
        else:
            self.headers["x-vcloud-authorization"] = resp.headers["x-vcloud-authorization"]

    # ----------------------------
    # Org and VDC
    @cached_property
    def vdc_href(self) -> str:
        orgs = self.get("org").get("org") or []
        if not (found := _find_by_name(orgs, self.config.vcd_org)):
            raise OrgNotFound(kind="Organization", name=self.config.vcd_org)
        org = self.get(found[0].href)
        if not (found := _find_by_name(org.get("link") or [], self.config.vcd_vdc, mime=MIME_VDC)):
            raise VdcNotFound(kind="VDC", name=self.config.vcd_vdc, org=self.config.vcd_org)
        return found[0].href

    def resource_entities(self, mime: str):
        """Entities of given type in the VDC. The VDC is re-read every time."""
        vdc = self.get(self.vdc_href, log_result=False)
        entities = (vdc.get("resourceEntities") or {}).get("resourceEntity") or []
        return [e for e in entities if _is_type(e, mime)]

    # ----------------------------
    # VMs
    def find_vm(self, vapp_name: str, vm_name: str) -> VAppVm:
        if not (found := _find_by_name(self.resource_entities(MIME_VAPP), vapp_name)):
            raise VAppNotFound(kind="vApp", name=vapp_name)
        vapp = self.get(found[0].href, log_result=False)
        vms = (vapp.get("children") or {}).get("vm") or []
        if not (found := _find_by_name(vms, vm_name)):
            raise VmNotFound(kind="VM", name=vm_name, vapp=vapp_name)
        vm = found[0]
        return VAppVm(name=vm.name, href=vm.href, id=vm.get("id", ""))

    # ----------------------------
    # Disks
    def find_disk_by_name(self, name: str) -> CloudDisk:
        found = _find_by_name(self.resource_entities(MIME_DISK), name)
        if not found:
            raise DiskNotFound(kind="Disk", name=name)
        elif len(found) > 1:
            raise DuplicateDisk(name=name, count=len(found))
        return self.get_disk(found[0].href)

    def get_disk(self, href: str) -> CloudDisk:
        raw = self.get(href)
        attached = self.get(f"{href}/attachedVms")
        refs = (attached or {}).get("vmReference") or []
        attached_vm = VAppVm(name=refs[0].name, href=refs[0].href, id=refs[0].get("id", "")) if refs else None
        if raw.get("sizeMb"):
            size_bytes = int(raw.sizeMb) * 2 ** 20
        else:
            size_bytes = int(raw.get("size") or 0)
        return CloudDisk(
            id=raw.id,
            name=raw.name,
            href=raw.href,
            size_bytes=size_bytes,
            description=raw.get("description") or "",
            attached_vm=attached_vm,
        )

    def create_disk(self, name: str, size_bytes: int, description: str = ""):
        """Create independent disk. Its final href is not known until the creation tasks complete."""
        disk = self.post(
            f"{self.vdc_href}/disk",
            data=dict(disk=dict(name=name, size=size_bytes, description=description)),
            content_type=MIME_DISK_CREATE,
        )
        for task in (disk.get("tasks") or {}).get("task") or []:
            self.wait_task(task, operation=f"create disk {name}")

    def update_disk_description(self, disk: CloudDisk, description: str):
        raw = self.get(disk.href)
        body = {k: v for k, v in raw.items() if k not in ("link", "tasks", "owner", "files")}
        body["description"] = description
        task = self.put(disk.href, data=body, content_type=f"{MIME_DISK}+json")
        self.wait_task(task, operation=f"update disk {disk.name}")

    def attach_disk(self, vm: VAppVm, disk: CloudDisk):
        self._disk_action(vm, disk, "attach")

    def detach_disk(self, vm: VAppVm, disk: CloudDisk):
        self._disk_action(vm, disk, "detach")

    def _disk_action(self, vm, disk, action):
        task = self.post(
            f"{vm.href}/disk/action/{action}",
            data=dict(disk=dict(href=disk.href)),
            content_type=MIME_DISK_ATTACH,
        )
        self.wait_task(task, operation=f"{action} disk {disk.name} ({vm.name})")

    # ----------------------------
    # Tasks
    def wait_task(self, task: Bunch, operation: str) -> Bunch:
        """
        Poll task until it is finished.
        With `task_timeout` configured we stop waiting after it, but the task itself keeps running in vCD.
        """
        timer = Timer(expiration=self.config.task_timeout) if self.config.task_timeout else None
        while task.status not in TASK_FINISHED:
            if timer and timer.expired:
                raise TaskTimeout(operation=operation, timeout=self.config.task_timeout, href=task.href)
            time.sleep(self.config.task_poll_interval)
            task = self.get(task.href, log_result=False)

        if task.status != TASK_SUCCESS:
            raise TaskFailed(
                operation=operation, status=task.status, href=task.href,
                detail=(task.get("error") or {}).get("message", ""),
            )
        logger.info(f"Task done: {operation}")
        return task

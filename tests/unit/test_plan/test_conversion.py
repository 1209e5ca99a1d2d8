# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import base64
import xml.etree.ElementTree as ET
from unittest import mock

import pytest

from hyper2kubevirt.config.settings import MigrationSettings, Settings
from hyper2kubevirt.core.exceptions import InternalError, NotFoundError, TransientNetworkError, ValidationError
from hyper2kubevirt.plan.conversion import (
    INPUT_XML_KEY,
    LIBVIRT_VOLUME,
    VDDK_VOLUME,
    ConversionState,
    GuestConversion,
    quantity_bytes,
)
from hyper2kubevirt.plan.kubevirt import KVM_DEVICE
from hyper2kubevirt.plan.labels import ANN_DEFAULT_NETWORK
from hyper2kubevirt.plan.models import STEP_IMAGE_CONVERSION, Firmware, NetworkRef, Progress, Step
from hyper2kubevirt.store import kinds
from hyper2kubevirt.store.base import name_of

from fakes.fake_store import InMemoryStore
from fakes.plan_factory import TARGET_NS, import_disks, make_engine, make_plan, status_for, vsphere_vm

POD_IP = "10.128.0.7"

EFI_OVF = """<domain type='kvm'>
  <name>web01</name>
  <os>
    <type arch='x86_64' machine='q35'>hvm</type>
    <loader readonly='yes' type='pflash'>/usr/share/OVMF/OVMF_CODE.fd</loader>
  </os>
</domain>"""

BIOS_OVF = "<domain type='kvm'><name>web01</name><os><type>hvm</type></os></domain>"


def _setup(source=None, settings=None, status_kw=None, **plan_kw):
    store = InMemoryStore()
    source = source or vsphere_vm()
    engine = make_engine(store, make_plan(**plan_kw), source, settings=settings)
    vm = status_for(source, **(status_kw or {}))
    import_disks(engine, vm)
    vm_cr = engine.ensure_vm(vm)
    client = mock.Mock()
    return store, engine, vm, vm_cr, GuestConversion(engine, client=client)


def _step():
    return Step(name=STEP_IMAGE_CONVERSION, progress=Progress(total=100))


def _conversion_pods(engine, vm):
    return engine.get_pods_with_labels(engine.key(vm.id).conversion_labels())


def _set_pod_status(store, pod, **status):
    store.patch(kinds.POD, name_of(pod), TARGET_NS, {"status": status})


@pytest.mark.unit
class TestQuantity:
    @pytest.mark.parametrize(
        "q,expected",
        [("2048Mi", 2048 * 2**20), ("1Gi", 2**30), ("512M", 512 * 10**6), ("100", 100), (4096, 4096)],
    )
    def test_quantities(self, q, expected):
        assert quantity_bytes(q) == expected

    def test_invalid_quantity(self):
        with pytest.raises(ValidationError):
            quantity_bytes("lots")


@pytest.mark.unit
class TestLibvirtDomain:
    def test_domain_describes_mounted_disks(self):
        store, engine, vm, vm_cr, conv = _setup()

        root = ET.fromstring(conv.libvirt_domain(vm_cr, engine.get_pvcs(vm.ref)))

        assert root.findtext("name") == "web01"
        memory = root.find("memory")
        assert memory.get("unit") == "B"
        assert int(memory.text) == 2048 * 2**20
        topology = root.find("cpu/topology")
        assert (topology.get("sockets"), topology.get("cores")) == ("2", "2")
        assert root.findtext("os/type") == "hvm"
        disks = root.findall("devices/disk")
        assert [d.find("source").get("file") for d in disks] == [
            "/mnt/disks/disk0/disk.img",
            "/mnt/disks/disk1/disk.img",
        ]
        assert [d.find("target").get("dev") for d in disks] == ["hda", "hdb"]
        assert {d.find("target").get("bus") for d in disks} == {"virtio"}

    def test_block_claim_becomes_block_device(self):
        store, engine, vm, vm_cr, conv = _setup()
        second = engine.get_pvcs(vm.ref)[1]
        store.patch(kinds.PVC, name_of(second), TARGET_NS, {"spec": {"volumeMode": "Block"}})

        root = ET.fromstring(conv.libvirt_domain(vm_cr, engine.get_pvcs(vm.ref)))

        disk = root.findall("devices/disk")[1]
        assert disk.get("type") == "block"
        assert disk.find("source").get("dev") == "/dev/block1"

    def test_unknown_claim_rejected(self):
        store, engine, vm, vm_cr, conv = _setup()
        with pytest.raises(ValidationError) as ei:
            conv.libvirt_domain(vm_cr, [])
        assert ei.value.context["vm"] == "web01"


@pytest.mark.unit
class TestConversionPod:
    def test_pod_spec(self):
        store, engine, vm, vm_cr, conv = _setup()

        pod = conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))

        spec = pod["spec"]
        container = spec["containers"][0]
        secret = store.all(kinds.SECRET)[0]
        cm = store.all(kinds.CONFIG_MAP)[0]
        assert pod["metadata"]["labels"] == engine.key(vm.id).conversion_labels()
        assert container["image"] == engine.settings.migration.virt_v2v_image_cold
        assert container["envFrom"] == [{"prefix": "V2V_", "secretRef": {"name": name_of(secret)}}]
        assert {"name": "V2V_vmName", "value": "web01"} in container["env"]
        assert container["ports"][0]["containerPort"] == engine.settings.conversion.metrics_port
        mounts = {m["name"]: m["mountPath"] for m in container["volumeMounts"]}
        claims = [name_of(p) for p in engine.get_pvcs(vm.ref)]
        assert mounts[claims[0]] == "/mnt/disks/disk0"
        assert mounts[claims[1]] == "/mnt/disks/disk1"
        assert mounts[LIBVIRT_VOLUME] == "/mnt/v2v"
        assert mounts[VDDK_VOLUME] == "/opt"
        assert mounts["secret-volume"] == "/etc/secret"
        volumes = {v["name"]: v for v in spec["volumes"]}
        assert volumes[LIBVIRT_VOLUME]["configMap"]["name"] == name_of(cm)
        assert volumes["secret-volume"]["secret"]["secretName"] == name_of(secret)
        assert spec["initContainers"][0]["image"] == "quay.io/example/vddk:8"
        assert spec["securityContext"]["runAsUser"] == 107
        assert spec["securityContext"]["seccompProfile"] == {"type": "RuntimeDefault"}
        assert container["resources"]["limits"][KVM_DEVICE] == "1"
        assert "volumeDevices" not in container

    def test_config_map_carries_domain_xml(self):
        store, engine, vm, vm_cr, conv = _setup()
        conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))

        cm = store.all(kinds.CONFIG_MAP)[0]
        xml = base64.b64decode(cm["binaryData"][INPUT_XML_KEY]).decode("utf-8")
        assert ET.fromstring(xml).findtext("name") == "web01"
        assert cm["data"]["vmName"] == "web01"

    def test_at_most_one_pod(self):
        store, engine, vm, vm_cr, conv = _setup()
        pvcs = engine.get_pvcs(vm.ref)

        first = conv.ensure_guest_conversion_pod(vm, vm_cr, pvcs)
        second = conv.ensure_guest_conversion_pod(vm, vm_cr, pvcs)

        assert name_of(first) == name_of(second)
        assert len(_conversion_pods(engine, vm)) == 1

    def test_pod_from_earlier_migration_counts(self):
        store, engine, vm, vm_cr, conv = _setup()
        earlier = make_engine(store, engine.plan, vsphere_vm(), migration_uid="older")
        old = store.put(
            {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": {"name": "old-v2v", "namespace": TARGET_NS, "labels": earlier.key(vm.id).conversion_labels()},
            }
        )

        pod = conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))

        assert name_of(pod) == name_of(old)
        assert _conversion_pods(engine, vm) == []

    def test_warm_image_without_secret_volume(self):
        store, engine, vm, vm_cr, conv = _setup(el9_virt_v2v=False)
        pod = conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))
        assert pod["spec"]["containers"][0]["image"] == engine.settings.migration.virt_v2v_image_warm
        assert "secret-volume" not in {v["name"] for v in pod["spec"]["volumes"]}

    def test_block_devices_luks_and_transfer_network(self):
        store, engine, vm, vm_cr, conv = _setup(
            status_kw={"luks_secret": "luks-keys"}, transfer_network=NetworkRef("mtv", "transfer")
        )
        first = engine.get_pvcs(vm.ref)[0]
        store.patch(kinds.PVC, name_of(first), TARGET_NS, {"spec": {"volumeMode": "Block"}})

        pod = conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))

        container = pod["spec"]["containers"][0]
        assert container["volumeDevices"] == [{"name": name_of(first), "devicePath": "/dev/block0"}]
        assert {"name": "luks", "mountPath": "/etc/luks", "readOnly": True} in container["volumeMounts"]
        assert {"name": "luks", "secret": {"secretName": "luks-keys"}} in pod["spec"]["volumes"]
        assert pod["metadata"]["annotations"][ANN_DEFAULT_NETWORK] == "mtv/transfer"

    def test_kvm_not_requested_when_disabled(self):
        settings = Settings(migration=MigrationSettings(virt_v2v_dont_request_kvm=True))
        store, engine, vm, vm_cr, conv = _setup(settings=settings)
        pod = conv.ensure_guest_conversion_pod(vm, vm_cr, engine.get_pvcs(vm.ref))
        assert "resources" not in pod["spec"]["containers"][0]
        assert "nodeSelector" not in pod["spec"]


@pytest.mark.unit
class TestState:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ({}, ConversionState.CREATED),
            ({"phase": "Pending"}, ConversionState.CREATED),
            ({"phase": "Running"}, ConversionState.RUNNING_NO_ADDRESS),
            ({"phase": "Running", "podIP": POD_IP}, ConversionState.RUNNING_WITH_ADDRESS),
            ({"phase": "Succeeded"}, ConversionState.COMPLETED),
            ({"phase": "Failed"}, ConversionState.FAILED),
        ],
    )
    def test_pod_phases(self, status, expected):
        assert GuestConversion.state({"status": status}, _step()) == expected

    def test_no_pod(self):
        assert GuestConversion.state(None) == ConversionState.NOT_CREATED

    def test_completed_step_means_shutdown_requested(self):
        step = _step()
        step.mark_completed()
        pod = {"status": {"phase": "Running", "podIP": POD_IP}}
        assert GuestConversion.state(pod, step) == ConversionState.SHUTDOWN_REQUESTED


@pytest.mark.unit
class TestConverge:
    def _running(self, store, conv, vm, step):
        assert conv.converge(vm, step) == ConversionState.CREATED
        pod = conv.get_guest_conversion_pod(vm)
        _set_pod_status(store, pod, phase="Running", podIP=POD_IP)
        return pod

    def test_vm_must_exist(self):
        store = InMemoryStore()
        source = vsphere_vm()
        engine = make_engine(store, make_plan(), source)
        conv = GuestConversion(engine, client=mock.Mock())
        with pytest.raises(NotFoundError):
            conv.converge(status_for(source), _step())
        assert store.all(kinds.POD) == []

    def test_waits_for_address(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        conv.converge(vm, step)
        _set_pod_status(store, conv.get_guest_conversion_pod(vm), phase="Running")

        assert conv.converge(vm, step) == ConversionState.RUNNING_NO_ADDRESS
        conv.client.fetch_ovf.assert_not_called()

    def test_connection_refused_is_not_ready(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        self._running(store, conv, vm, step)
        conv.client.fetch_ovf.side_effect = TransientNetworkError(code=75, msg="connection refused")

        assert conv.converge(vm, step) == ConversionState.RUNNING_WITH_ADDRESS
        assert conv.converge(vm, step) == ConversionState.RUNNING_WITH_ADDRESS

        assert not step.is_completed
        conv.client.shutdown.assert_not_called()
        assert len(_conversion_pods(engine, vm)) == 1

    def test_other_fetch_errors_surface(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        self._running(store, conv, vm, step)
        conv.client.fetch_ovf.side_effect = InternalError(code=70, msg="GET /ovf returned 500")

        with pytest.raises(InternalError):
            conv.converge(vm, step)
        assert not step.is_completed
        conv.client.shutdown.assert_not_called()

    def test_shutdown_failure_still_completes_step(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        pod = self._running(store, conv, vm, step)
        conv.client.fetch_ovf.return_value = BIOS_OVF
        conv.client.shutdown.side_effect = InternalError(code=70, msg="POST /shutdown: read timed out")

        with pytest.raises(InternalError):
            conv.converge(vm, step)

        assert step.is_completed
        assert step.progress.completed == 100
        assert "read timed out" in step.error
        assert engine.get_vm(vm)["spec"]["template"]["spec"]["domain"]["firmware"]["bootloader"] == {"bios": {}}

        # The server acted on the request anyway and virt-v2v exits.
        _set_pod_status(store, pod, phase="Succeeded")
        assert conv.converge(vm, step) == ConversionState.COMPLETED
        conv.client.fetch_ovf.assert_called_once_with(POD_IP)
        conv.client.shutdown.assert_called_once_with(POD_IP)

    def test_success_completes_step_once(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        pod = self._running(store, conv, vm, step)
        conv.client.fetch_ovf.return_value = EFI_OVF

        assert conv.converge(vm, step) == ConversionState.SHUTDOWN_REQUESTED
        assert conv.converge(vm, step) == ConversionState.SHUTDOWN_REQUESTED

        conv.client.fetch_ovf.assert_called_once_with(POD_IP)
        conv.client.shutdown.assert_called_once_with(POD_IP)
        assert step.is_completed
        assert step.progress.completed == 100
        assert vm.firmware == Firmware.EFI
        bootloader = engine.get_vm(vm)["spec"]["template"]["spec"]["domain"]["firmware"]["bootloader"]
        assert bootloader == {"efi": {"secureBoot": False}}

        _set_pod_status(store, pod, phase="Succeeded")
        assert conv.converge(vm, step) == ConversionState.COMPLETED
        store.delete(kinds.POD, name_of(pod), TARGET_NS)
        assert conv.converge(vm, step) == ConversionState.COMPLETED
        assert _conversion_pods(engine, vm) == []

    def test_secure_boot_kept_on_efi(self):
        source = vsphere_vm(firmware=Firmware.EFI, secure_boot=True)
        store, engine, vm, vm_cr, conv = _setup(source=source)
        step = _step()
        self._running(store, conv, vm, step)
        conv.client.fetch_ovf.return_value = EFI_OVF

        conv.converge(vm, step)

        bootloader = engine.get_vm(vm)["spec"]["template"]["spec"]["domain"]["firmware"]["bootloader"]
        assert bootloader == {"efi": {"secureBoot": True}}

    def test_bios_replaces_efi(self):
        source = vsphere_vm(firmware=Firmware.EFI)
        store, engine, vm, vm_cr, conv = _setup(source=source)
        step = _step()
        self._running(store, conv, vm, step)
        conv.client.fetch_ovf.return_value = BIOS_OVF

        conv.converge(vm, step)

        bootloader = engine.get_vm(vm)["spec"]["template"]["spec"]["domain"]["firmware"]["bootloader"]
        assert bootloader == {"bios": {}}
        assert vm.firmware == Firmware.BIOS

    def test_failed_pod_reported(self):
        store, engine, vm, vm_cr, conv = _setup()
        step = _step()
        conv.converge(vm, step)
        _set_pod_status(store, conv.get_guest_conversion_pod(vm), phase="Failed")

        assert conv.converge(vm, step) == ConversionState.FAILED
        assert any("virt-v2v pod" in m for m in engine.logger.messages("error"))
        assert not step.is_completed
        assert len(_conversion_pods(engine, vm)) == 1

# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import pytest

from hyper2kubevirt.config.settings import Settings
from hyper2kubevirt.core.exceptions import ValidationError
from hyper2kubevirt.plan.builder import OpenStackBuilder, VSphereBuilder, builder_for
from hyper2kubevirt.plan.builder.vsphere import base_volume
from hyper2kubevirt.plan.labels import ANN_DISK_SOURCE, VOLUME, OwnershipKey
from hyper2kubevirt.plan.models import Disk, Firmware, Lun, Nic, ProviderType, VMRef

from fakes.fake_inventory import FakeInventory
from fakes.plan_factory import make_plan, openstack_provider, openstack_vm, vsphere_provider, vsphere_vm

KEY = OwnershipKey(migration="m1", plan="p1", vm="vm-1")


def _claim(name, source=None, **labels):
    ann = {ANN_DISK_SOURCE: source} if source else {}
    return {"metadata": {"name": name, "labels": labels, "annotations": ann}}


@pytest.mark.unit
class TestRegistry:
    def test_builder_per_provider(self):
        inv = FakeInventory()
        assert isinstance(builder_for(make_plan(vsphere_provider()), inv, Settings()), VSphereBuilder)
        assert isinstance(builder_for(make_plan(openstack_provider()), inv, Settings()), OpenStackBuilder)

    def test_unknown_provider(self):
        plan = make_plan(vsphere_provider(type=ProviderType.OVA))
        with pytest.raises(ValidationError) as ei:
            builder_for(plan, FakeInventory(), Settings())
        assert ei.value.context["supported"] == ["openstack", "vsphere"]


@pytest.mark.unit
class TestVSphereBuilder:
    def _builder(self, vm=None, **plan_kw):
        vm = vm or vsphere_vm()
        return VSphereBuilder(make_plan(vsphere_provider(), **plan_kw), FakeInventory(vm), Settings()), vm

    def test_base_volume_strips_snapshot_suffix(self):
        assert base_volume("[ds1] web01/web01-000001.vmdk") == "[ds1] web01/web01.vmdk"
        assert base_volume("[ds1] web01/web01.vmdk") == "[ds1] web01/web01.vmdk"
        assert base_volume("[ds1] web01/web01-01.vmdk") == "[ds1] web01/web01-01.vmdk"

    def test_secret(self):
        b, vm = self._builder()
        data = b.secret(VMRef(vm.id), b.plan.provider.secret)
        assert data == {
            "accessKeyId": "administrator@vsphere.local",
            "secretKey": "s3cret",
            "thumbprint": "AA:BB:CC",
            "cacert": "-----BEGIN CERTIFICATE-----",
        }

    def test_config_map(self):
        b, vm = self._builder()
        cm = {"metadata": {}}
        b.config_map(VMRef(vm.id), {}, cm)
        assert cm["data"] == {"vmName": "web01", "vmUUID": "4210-vm-1", "providerURL": "https://vcenter.example.com/sdk"}

    def test_cold_el9_data_volumes_are_blank(self):
        b, vm = self._builder()
        dvs = b.data_volumes(VMRef(vm.id), {"metadata": {"name": "s1"}}, {}, {"metadata": {"annotations": {}}})
        assert len(dvs) == 2
        assert dvs[0]["spec"]["source"] == {"blank": {}}
        assert dvs[0]["spec"]["storage"]["storageClassName"] == "standard"
        assert dvs[1]["spec"]["storage"]["resources"]["requests"]["storage"] == str(20 * 1024 ** 3)
        assert dvs[0]["metadata"]["annotations"][ANN_DISK_SOURCE] == "[ds1] web01/web01.vmdk"

    def test_warm_data_volumes_use_vddk(self):
        snap = vsphere_vm(disks=[Disk(id="d0", file="[ds1] web01/web01-000002.vmdk", capacity_bytes=1, datastore="ds1")])
        b, vm = self._builder(snap, warm=True)
        dv = b.data_volumes(VMRef(vm.id), {"metadata": {"name": "s1"}}, {}, {"metadata": {}})[0]
        assert dv["spec"]["source"]["vddk"] == {
            "backingFile": "[ds1] web01/web01.vmdk",
            "url": "https://vcenter.example.com/sdk",
            "uuid": "4210-vm-1",
            "thumbprint": "AA:BB:CC",
            "secretRef": "s1",
            "initImageURL": "quay.io/example/vddk:8",
        }
        assert b.resolve_data_volume_identifier(dv) == "[ds1] web01/web01.vmdk"

    def test_unmapped_datastore(self):
        vm = vsphere_vm(disks=[Disk(id="d0", file="[nfs] a.vmdk", capacity_bytes=1, datastore="nfs")])
        b, _ = self._builder(vm)
        with pytest.raises(ValidationError):
            b.data_volumes(VMRef(vm.id), {"metadata": {"name": "s"}}, {}, {"metadata": {}})

    def test_virtual_machine_hardware(self):
        vm = vsphere_vm(
            nics=[Nic(mac="00:50:56:aa:bb:01", network="net1"), Nic(mac="00:50:56:aa:bb:02", network="net2")],
            luns=[Lun(id="lun-a", portal="10.0.0.5:3260", iqn="iqn.2001-05.com.example:t1", lun=0, capacity_bytes=1)],
        )
        b, _ = self._builder(vm)
        pvcs = [
            _claim("c1", "[ds1] web01/web01_1.vmdk"),
            _claim("c0", "[ds1] web01/web01-000001.vmdk"),
            _claim("lun0", **{VOLUME: "lun-a"}),
        ]
        spec = {}

        b.virtual_machine(VMRef(vm.id), spec, pvcs)

        tspec = spec["template"]["spec"]
        domain = tspec["domain"]
        assert domain["cpu"] == {"sockets": 2, "cores": 2}
        assert domain["memory"]["guest"] == "2048Mi"
        assert domain["firmware"] == {"bootloader": {"bios": {}}, "serial": "4210-vm-1"}
        assert [v["persistentVolumeClaim"]["claimName"] for v in tspec["volumes"]] == ["c0", "c1", "lun0"]
        assert domain["devices"]["disks"][0] == {"name": "vol-0", "disk": {"bus": "virtio"}, "bootOrder": 1}
        assert domain["devices"]["disks"][2] == {"name": "lun-0", "lun": {}}
        assert tspec["networks"] == [{"name": "net-0", "pod": {}}, {"name": "net-1", "multus": {"networkName": "default/vlan10"}}]
        assert "masquerade" in domain["devices"]["interfaces"][0]
        assert "bridge" in domain["devices"]["interfaces"][1]

    def test_efi_secure_boot(self):
        b, _ = self._builder(vsphere_vm(firmware=Firmware.EFI, secure_boot=True))
        spec = {}
        b.virtual_machine(VMRef("vm-1"), spec, [])
        domain = spec["template"]["spec"]["domain"]
        assert domain["firmware"]["bootloader"] == {"efi": {"secureBoot": True}}
        assert domain["features"]["smm"] == {"enabled": True}

    def test_unmapped_network(self):
        b, _ = self._builder(vsphere_vm(nics=[Nic(mac="m", network="nowhere")]))
        with pytest.raises(ValidationError):
            b.virtual_machine(VMRef("vm-1"), {}, [])

    def test_pod_environment(self):
        b, vm = self._builder(vsphere_vm(encryption_secret="luks-keys"))
        env = {e["name"]: e["value"] for e in b.pod_environment(VMRef(vm.id), b.plan.provider.secret)}
        assert env["V2V_vmName"] == "web01"
        assert env["V2V_source"] == "vSphere"
        assert env["V2V_fingerprint"] == "AA:BB:CC"
        assert env["V2V_LUKS"] == "/etc/luks"
        assert env["V2V_libvirtURL"] == (
            "vpx://administrator%40vsphere.local@vcenter.example.com/Datacenter/host/cluster/esx1.example.com?no_verify=1"
        )

    def test_preference_and_template_labels(self):
        b, vm = self._builder()
        assert b.preference_name(VMRef(vm.id), {"data": {"rhel8_64Guest": "rhel.8"}}) == "rhel.8"
        with pytest.raises(ValidationError):
            b.preference_name(VMRef(vm.id), None)
        assert b.template_labels(VMRef(vm.id)) == {
            "os.template.kubevirt.io/rhel8.1": "true",
            "workload.template.kubevirt.io/server": "true",
            "flavor.template.kubevirt.io/medium": "true",
        }

    def test_lun_volumes(self):
        vm = vsphere_vm(luns=[Lun(id="lun-a", portal="10.0.0.5:3260", iqn="iqn.x:t1", lun=3, capacity_bytes=100)])
        b, _ = self._builder(vm)
        pvs = b.lun_persistent_volumes(VMRef(vm.id), KEY)
        pvcs = b.lun_persistent_volume_claims(VMRef(vm.id), KEY)
        assert pvs[0]["spec"]["iscsi"]["lun"] == 3
        assert pvs[0]["metadata"]["labels"][VOLUME] == "lun-a"
        assert pvcs[0]["spec"]["volumeName"] == pvs[0]["metadata"]["name"]
        assert pvcs[0]["metadata"]["generateName"] == "plan1-vm-1-"


@pytest.mark.unit
class TestOpenStackBuilder:
    def _builder(self):
        vm = openstack_vm()
        return OpenStackBuilder(make_plan(openstack_provider()), FakeInventory(vm), Settings()), vm

    def test_populator_volumes(self):
        b, vm = self._builder()
        vols = b.populator_volumes(VMRef(vm.id), KEY.vm_labels(), "creds")
        assert len(vols) == 2
        src, claim = vols[0].source, vols[0].claim
        assert src["kind"] == "OpenstackVolumePopulator"
        assert src["spec"] == {
            "identityUrl": "https://keystone.example.com:5000/v3",
            "secretName": "creds",
            "imageId": "os-vm-1-vol-a",
        }
        assert claim["spec"]["dataSourceRef"]["kind"] == "OpenstackVolumePopulator"
        assert claim["spec"]["storageClassName"] == "ceph-rbd"
        assert b.resolve_persistent_volume_claim_identifier(claim) == "os-vm-1-vol-a"
        assert claim["metadata"]["labels"] == KEY.vm_labels()

    def test_config_map(self):
        b, vm = self._builder()
        cm = {}
        b.config_map(VMRef(vm.id), b.plan.provider.secret, cm)
        assert cm["data"] == {"identityUrl": "https://keystone.example.com:5000/v3", "regionName": "regionOne"}

    def test_missing_capabilities(self):
        b, vm = self._builder()
        with pytest.raises(ValidationError) as ei:
            b.secret(VMRef(vm.id), {})
        assert "missing builder capability" in str(ei.value)
        with pytest.raises(ValidationError):
            b.pod_environment(VMRef(vm.id), {})
        with pytest.raises(ValidationError):
            b.data_volumes(VMRef(vm.id), {}, {}, {})

    def test_preference_fallback_table(self):
        b, vm = self._builder()
        assert b.preference_name(VMRef(vm.id), None) == "rhel.9"
        assert b.template_labels(VMRef(vm.id))["os.template.kubevirt.io/rhel9.0"] == "true"

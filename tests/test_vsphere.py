#!/usr/bin/env python3
# test_vsphere.py - vSphere Operations Unit Tests
# Version 1.0 - October 2026

import pytest
import os
import sys
from unittest.mock import MagicMock, patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'vSphere'))

import apifunctions as apf
import vsphere
from pyVmomi import vim


def named(name, **attrs):
    """MagicMock managed object with a name"""
    obj = MagicMock(**attrs)
    obj.name = name
    return obj


def fake_si(*objects):
    """ServiceInstance whose container views hold the given objects"""
    si = MagicMock()
    container = MagicMock()
    container.view = list(objects)
    si.RetrieveContent.return_value.viewManager.CreateContainerView.return_value = container
    return si


def mounted_datastore(name, hosts, ds_type='VMFS'):
    datastore = named(name)
    datastore.summary.type = ds_type
    datastore.info.vmfs.uuid = f'{name}-uuid'
    mounts = []
    for host in hosts:
        mount = MagicMock()
        mount.key = host
        mount.mountInfo.mounted = True
        mounts.append(mount)
    datastore.host = mounts
    return datastore


@pytest.fixture
def connector(cache, protector):
    return vsphere.VSphereConnector(cache=cache, protector=protector)


#==============================================================================
# CONNECTION
#==============================================================================

class TestVSphereConnection:
    """Test connection handle reuse"""

    def test_connect(self, connector, cache):
        si = MagicMock()
        with patch('vsphere.connect.SmartConnect', return_value=si) as mock_connect:
            result = connector.connect(server='vcsa', identity='administrator@vsphere.local', secret='p@ss',
                                       approve_all_certificates=True)

        assert result is si
        kwargs = mock_connect.call_args.kwargs
        assert kwargs['host'] == 'vcsa'
        assert kwargs['user'] == 'administrator@vsphere.local'
        assert kwargs['pwd'] == 'p@ss'
        assert kwargs['port'] == 443
        assert kwargs['disableSslCertValidation'] is True
        assert cache.get('vSphere', 'Connection') is si

    def test_connection_reused(self, connector):
        si = MagicMock()
        with patch('vsphere.connect.SmartConnect', return_value=si) as mock_connect:
            connector.connect(server='vcsa', identity='admin', secret='p@ss')
            assert connector.get_connection() is si
        assert mock_connect.call_count == 1

    def test_supplied_handle(self, connector, cache):
        """An existing ServiceInstance is cached without logging in"""
        si = MagicMock()
        with patch('vsphere.connect.SmartConnect') as mock_connect:
            assert connector.connect(server='vcsa', token=si) is si
        mock_connect.assert_not_called()
        assert cache.get('vSphere', 'Connection') is si

    def test_invalid_login(self, connector, cache):
        with patch('vsphere.connect.SmartConnect',
                   side_effect=vim.fault.InvalidLogin(msg='Cannot complete login due to an incorrect user name or password.')):
            with pytest.raises(apf.AuthenticationError, match='incorrect user name'):
                connector.connect(server='vcsa', identity='admin', secret='bad')
        assert cache.get('vSphere', 'Connection') is None

    def test_missing_credential(self, connector):
        with patch('vsphere.connect.SmartConnect') as mock_connect:
            with pytest.raises(apf.MissingCredentialError):
                connector.connect(server='vcsa', identity='admin')
        mock_connect.assert_not_called()

    def test_credential_scoped_to_server(self, connector, cache):
        with patch('vsphere.connect.SmartConnect', return_value=MagicMock()) as mock_connect:
            connector.connect(server='vcsa-a', identity='admin', secret='p@ss')
            with pytest.raises(apf.MissingCredentialError):
                connector.connect(server='vcsa-b')
        assert [call.kwargs['host'] for call in mock_connect.call_args_list] == ['vcsa-a']

    def test_connect_through_proxy(self, connector, cache):
        apf.set_proxy_settings(cache, 'http://proxy.example.com:3128')
        with patch('vsphere.connect.SmartConnect', return_value=MagicMock()) as mock_connect:
            connector.connect(server='vcsa', identity='admin', secret='p@ss')
        kwargs = mock_connect.call_args.kwargs
        assert kwargs['httpProxyHost'] == 'proxy.example.com'
        assert kwargs['httpProxyPort'] == 3128

    def test_connect_direct_without_proxy(self, connector):
        with patch('vsphere.connect.SmartConnect', return_value=MagicMock()) as mock_connect:
            connector.connect(server='vcsa', identity='admin', secret='p@ss')
        assert 'httpProxyHost' not in mock_connect.call_args.kwargs

    def test_disconnect(self, connector, cache):
        si = MagicMock()
        connector.connect(server='vcsa', token=si)
        with patch('vsphere.connect.Disconnect') as mock_disconnect:
            assert connector.disconnect() is True
        mock_disconnect.assert_called_once_with(si)
        assert cache.get('vSphere', 'Connection') is None

    def test_disconnect_without_connection(self, connector):
        assert connector.disconnect() is False

#==============================================================================
# INVENTORY
#==============================================================================

class TestInventory:
    """Test inventory lookups"""

    def test_get_all_objs(self):
        vm1, vm2 = named('web01'), named('web02')
        si = fake_si(vm1, vm2)
        content = si.RetrieveContent()

        objs = vsphere.get_all_objs(content, [vim.VirtualMachine])

        assert objs == {vm1: 'web01', vm2: 'web02'}
        content.viewManager.CreateContainerView.return_value.Destroy.assert_called_once()

    def test_find_object(self):
        vm = named('web01')
        assert vsphere.find_object(fake_si(named('db01'), vm), vim.VirtualMachine, 'web01') is vm

    def test_find_object_missing(self):
        assert vsphere.find_object(fake_si(named('db01')), vim.VirtualMachine, 'web01') is None

    def test_get_vm_missing(self):
        with pytest.raises(apf.NotFoundError, match='VM not found: web01'):
            vsphere.get_vm(fake_si(), 'web01')

#==============================================================================
# VM OPERATIONS
#==============================================================================

class TestMoveVm:
    """Test VM relocation"""

    def test_move_to_host_and_datastore(self, capsys):
        vm, host, datastore = named('web01'), named('esx-02'), named('ds-02')
        si = fake_si(vm, host, datastore)

        with patch('vsphere.vim') as mock_vim, patch('vsphere.WaitForTask') as mock_wait:
            result = vsphere.move_vm(si, 'web01', 'esx-02', 'ds-02')

        spec = mock_vim.vm.RelocateSpec.return_value
        assert spec.host is host
        assert spec.pool is host.parent.resourcePool
        assert spec.datastore is datastore
        vm.RelocateVM_Task.assert_called_once_with(spec)
        mock_wait.assert_called_once_with(vm.RelocateVM_Task.return_value)
        assert result == {'VM': 'web01', 'Host': 'esx-02', 'Datastore': 'ds-02'}

    def test_move_needs_destination(self):
        with pytest.raises(ValueError):
            vsphere.move_vm(fake_si(), 'web01')

    def test_move_unknown_host(self):
        si = fake_si(named('web01'))
        with patch('vsphere.vim'), patch('vsphere.WaitForTask') as mock_wait:
            with pytest.raises(apf.NotFoundError, match='Host not found'):
                vsphere.move_vm(si, 'web01', host_name='esx-99')
        mock_wait.assert_not_called()

#==============================================================================
# DATASTORE OPERATIONS
#==============================================================================

class TestUnmountDatastore:
    """Test datastore unmount across hosts"""

    def test_unmount_all_hosts_partial_failure(self, capsys):
        """A failure on one host does not stop the others"""
        host1, host2 = named('esx-01'), named('esx-02')
        host2.configManager.storageSystem.UnmountVmfsVolume.side_effect = RuntimeError('Resource busy')
        datastore = mounted_datastore('ds-01', [host1, host2])

        result = vsphere.unmount_datastore(fake_si(datastore), 'ds-01')

        host1.configManager.storageSystem.UnmountVmfsVolume.assert_called_once_with(vmfsUuid='ds-01-uuid')
        assert result == {'Succeeded': ['esx-01'], 'Failed': [{'Id': 'esx-02', 'Error': 'Resource busy'}]}

    def test_unmount_nfs(self, capsys):
        host = named('esx-01')
        datastore = mounted_datastore('nfs-01', [host], ds_type='NFS')

        result = vsphere.unmount_datastore(fake_si(datastore), 'nfs-01')

        host.configManager.datastoreSystem.RemoveDatastore.assert_called_once_with(datastore)
        assert result['Succeeded'] == ['esx-01']

    def test_unmount_named_host_not_mounted(self):
        datastore = mounted_datastore('ds-01', [named('esx-01')])
        result = vsphere.unmount_datastore(fake_si(datastore), 'ds-01', ['esx-09'])
        assert result['Succeeded'] == []
        assert result['Failed'][0]['Id'] == 'esx-09'

    def test_unmounted_hosts_skipped(self, capsys):
        host1, host2 = named('esx-01'), named('esx-02')
        datastore = mounted_datastore('ds-01', [host1, host2])
        datastore.host[1].mountInfo.mounted = False

        result = vsphere.unmount_datastore(fake_si(datastore), 'ds-01')

        assert result['Succeeded'] == ['esx-01']
        host2.configManager.storageSystem.UnmountVmfsVolume.assert_not_called()

    def test_unknown_datastore(self):
        with pytest.raises(apf.NotFoundError):
            vsphere.unmount_datastore(fake_si(), 'ds-missing')

#==============================================================================
# COMMAND LINE
#==============================================================================

class TestVSphereMain:
    """Test the standalone entry point"""

    def test_connect_prints_product(self, temp_dir, capsys):
        si = MagicMock()
        si.content.about.fullName = 'VMware vCenter Server 8.0.2'
        with patch('vsphere.connect.SmartConnect', return_value=si), \
                patch('vsphere.connect.Disconnect') as mock_disconnect:
            with pytest.raises(SystemExit) as exc_info:
                vsphere.main(['connect', '--server', 'vcsa', '-u', 'admin', '-p', 'p@ss',
                              '--credential-dir', temp_dir])

        assert exc_info.value.code == 0
        assert 'VMware vCenter Server 8.0.2' in capsys.readouterr().out
        mock_disconnect.assert_called_once_with(si)

    def test_move_vm_requires_vm(self, temp_dir, capsys):
        with patch('vsphere.connect.SmartConnect', return_value=MagicMock()), \
                patch('vsphere.connect.Disconnect') as mock_disconnect:
            with pytest.raises(SystemExit) as exc_info:
                vsphere.main(['move-vm', '--server', 'vcsa', '-u', 'admin', '-p', 'p@ss',
                              '--credential-dir', temp_dir])

        assert exc_info.value.code == 1
        assert '--vm is required' in capsys.readouterr().err
        mock_disconnect.assert_called_once()

#!/usr/bin/env python3
# vsphere.py - vSphere Operations via pyVmomi
# Version 1.0 - October 2026
# vCenter/ESXi connection reuse, VM relocation and datastore unmount

import os
import sys
import json
import logging
import argparse
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim

# Add repository root to path for apifunctions access
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import apifunctions as apf

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

NAMESPACE = 'vSphere'
DEFAULT_PORT = 443

module_config = apf.load_module_config(os.path.dirname(os.path.abspath(__file__)))

#==============================================================================
# CONNECTOR
#==============================================================================

class VSphereConnector(apf.SessionConnector):
    """
    Connection handle reuse for vCenter/ESXi.

    The handle is a pyVmomi ServiceInstance rather than an HTTP token, so
    connect() returns the ServiceInstance and caches it under 'Connection'.
    """

    namespace = NAMESPACE
    token_key = 'Connection'

    def __init__(self, cache=None, resolver=None, protector=None, port: int = DEFAULT_PORT):
        if cache is None:
            cache = apf.VariableCache(module_config)
        super().__init__(cache, resolver, protector)
        self.port = port
        self.approve_all_certificates = False

    def connect(self, server: Optional[str] = None, token=None,
                approve_all_certificates: Optional[bool] = None,
                identity: Optional[str] = None, secret=None,
                interactive: bool = False, directory: Optional[str] = None):
        """
        Connect to a vCenter or ESXi host

        :param token: An existing ServiceInstance to reuse instead of logging in
        :return: ServiceInstance
        """
        self.server = self.cache.sync(NAMESPACE, 'Server', server, is_mandatory=True)
        self.approve_all_certificates = apf.parse_bool(
            self.cache.sync(NAMESPACE, 'ApproveAllCertificates', approve_all_certificates, default=False))

        if token is not None:
            self.cache.set(NAMESPACE, self.token_key, token)
            return token

        identity = self.cache.sync(NAMESPACE, 'Username', identity)
        credential = self.resolver.resolve(apf.CredentialRequest(
            identity=identity,
            secret=secret,
            server=self.server,
            interactive=interactive,
            directory=directory,
            mandatory=True,
        ))

        si = self._login(credential)
        self.cache.set(NAMESPACE, self.token_key, si)
        self.cache.set(NAMESPACE, apf.CacheProvider.key_for(self.server), credential)
        return si

    def _proxy_arguments(self) -> dict:
        proxy = apf.proxy_for_url(self.cache, f'https://{self.server}')
        if not proxy:
            return {}
        parsed = urlparse(proxy)
        return {'httpProxyHost': parsed.hostname, 'httpProxyPort': parsed.port or 80}

    def _login(self, credential: apf.Credential):
        try:
            si = connect.SmartConnect(
                host=self.server,
                user=credential.identity,
                pwd=credential.secret.reveal(),
                port=self.port,
                disableSslCertValidation=self.approve_all_certificates,
                **self._proxy_arguments()
            )
        except vim.fault.InvalidLogin as e:
            raise apf.AuthenticationError(getattr(e, 'msg', None) or 'Invalid login', 401) from e
        logger.info(f'Connected to {self.server}')
        return si

    def get_connection(self, **kwargs):
        """Cached ServiceInstance, or connect()"""
        si = self.cache.get(NAMESPACE, self.token_key)
        if si is not None:
            return si
        return self.connect(**kwargs)

    def get_token(self, **kwargs):
        return self.get_connection(**kwargs)

    def disconnect(self):
        si = self.cache.get(NAMESPACE, self.token_key)
        if si is None:
            return False
        try:
            connect.Disconnect(si)
        finally:
            self.cache.set(NAMESPACE, self.token_key, None)
        return True

#==============================================================================
# INVENTORY LOOKUPS
#==============================================================================

def get_all_objs(si_content, vimtype):
    """
    Method that populates objects of type vimtype such as
    vim.VirtualMachine, vim.HostSystem, vim.Datastore
    :param si_content: serviceinstance.content
    :param vimtype: VIM object type name (list)
    :return: dict of {object: name}
    """
    obj = {}
    container = si_content.viewManager.CreateContainerView(si_content.rootFolder, vimtype, True)
    for managed_object_ref in container.view:
        obj.update({managed_object_ref: managed_object_ref.name})
    container.Destroy()
    return obj


def find_object(si, vimtype, name: str):
    """First inventory object of vimtype called name, or None"""
    for managed_object_ref, obj_name in get_all_objs(si.RetrieveContent(), [vimtype]).items():
        if obj_name == name:
            return managed_object_ref
    return None


def _get_or_fail(si, vimtype, name: str, label: str):
    found = find_object(si, vimtype, name)
    if found is None:
        raise apf.NotFoundError(f'{label} not found: {name}', 404)
    return found


def get_vm(si, name: str):
    return _get_or_fail(si, vim.VirtualMachine, name, 'VM')


def get_host(si, name: str):
    return _get_or_fail(si, vim.HostSystem, name, 'Host')


def get_datastore(si, name: str):
    return _get_or_fail(si, vim.Datastore, name, 'Datastore')

#==============================================================================
# VM OPERATIONS
#==============================================================================

def move_vm(si, vm_name: str, host_name: Optional[str] = None,
            datastore_name: Optional[str] = None) -> dict:
    """
    Relocate a VM to another host and/or datastore

    :param si: ServiceInstance
    :param vm_name: VM to move
    :param host_name: Destination ESXi host
    :param datastore_name: Destination datastore
    :return: {'VM', 'Host', 'Datastore'}
    """
    if not host_name and not datastore_name:
        raise ValueError('move_vm needs a destination host or datastore')

    vm = get_vm(si, vm_name)
    spec = vim.vm.RelocateSpec()

    if host_name:
        host = get_host(si, host_name)
        spec.host = host
        spec.pool = host.parent.resourcePool
    if datastore_name:
        spec.datastore = get_datastore(si, datastore_name)

    logger.info(f'Relocating {vm_name} (host={host_name}, datastore={datastore_name})')
    task = vm.RelocateVM_Task(spec)
    WaitForTask(task)
    apf.write_output(f'Moved VM {vm_name}')
    return {'VM': vm_name, 'Host': host_name, 'Datastore': datastore_name}

#==============================================================================
# DATASTORE OPERATIONS
#==============================================================================

def _unmount_from_host(host, datastore):
    if datastore.summary.type == 'VMFS':
        host.configManager.storageSystem.UnmountVmfsVolume(vmfsUuid=datastore.info.vmfs.uuid)
    else:
        host.configManager.datastoreSystem.RemoveDatastore(datastore)


def unmount_datastore(si, datastore_name: str, host_names: Optional[List[str]] = None) -> Dict[str, list]:
    """
    Unmount a datastore from every host that mounts it, or from the named hosts

    A failure on one host does not stop the others.

    :param si: ServiceInstance
    :param datastore_name: Datastore to unmount
    :param host_names: Restrict to these hosts
    :return: {'Succeeded': [host, ...], 'Failed': [{'Id': host, 'Error': msg}, ...]}
    """
    datastore = get_datastore(si, datastore_name)
    mounts = {mount.key.name: mount.key for mount in datastore.host
              if mount.mountInfo is None or mount.mountInfo.mounted}

    targets = host_names if host_names else list(mounts.keys())
    result = {'Succeeded': [], 'Failed': []}

    for host_name in targets:
        try:
            host = mounts.get(host_name)
            if host is None:
                raise apf.NotFoundError(f'{datastore_name} is not mounted on {host_name}', 404)
            _unmount_from_host(host, datastore)
            apf.write_output(f'Unmounted {datastore_name} from {host_name}')
            result['Succeeded'].append(host_name)
        except Exception as e:
            message = apf.get_innermost_message(e)
            logger.warning(f'Unmount {datastore_name} from {host_name}: {message}')
            result['Failed'].append({'Id': host_name, 'Error': message})

    return result

#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

def run(args) -> int:
    connector = VSphereConnector(protector=apf.SecretProtector(args.credential_dir), port=args.port)
    if args.proxy:
        apf.set_proxy_settings(connector.cache, args.proxy)
    kwargs = apf.connection_kwargs(args)
    kwargs.pop('token')  # no pre-supplied handle from the command line
    si = connector.connect(**kwargs)

    try:
        if args.action == 'connect':
            about = si.content.about
            result = {'Server': connector.server, 'Product': about.fullName}
            print(json.dumps(result, indent=2) if args.as_json else about.fullName)
            return 0

        if args.action == 'move-vm':
            if not args.vm:
                raise apf.MissingValueError('--vm is required for move-vm')
            result = move_vm(si, args.vm, args.host, args.datastore)
            print(json.dumps(result, indent=2) if args.as_json else f"Moved {result['VM']}")
            return 0

        if args.action == 'unmount-datastore':
            if not args.datastore:
                raise apf.MissingValueError('--datastore is required for unmount-datastore')
            hosts = [args.host] if args.host else None
            result = unmount_datastore(si, args.datastore, hosts)
            if args.as_json:
                print(json.dumps(result, indent=2))
            else:
                for host_name in result['Succeeded']:
                    print(f'{host_name}\tunmounted')
                for failure in result['Failed']:
                    print(f"{failure['Id']}\tFAILED: {failure['Error']}")
            return 1 if result['Failed'] else 0

        raise ValueError(f'Unknown action: {args.action}')
    finally:
        connector.disconnect()


def main(argv=None):
    """Main entry point for standalone execution"""
    parser = argparse.ArgumentParser(description='vSphere Operations')
    parser.add_argument('action', choices=['connect', 'move-vm', 'unmount-datastore'],
                        help='Action to perform')
    apf.add_connection_arguments(parser)
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='vCenter/ESXi port')
    parser.add_argument('--vm', help='VM name for move-vm')
    parser.add_argument('--host', help='Destination host (move-vm) or single host (unmount-datastore)')
    parser.add_argument('--datastore', help='Destination datastore (move-vm) or datastore to unmount')

    args = parser.parse_args(argv)
    apf.set_verbose(args.verbose)
    sys.exit(apf.run_main(run, args))


if __name__ == '__main__':
    main()

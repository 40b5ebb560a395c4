"""
PowerShell scripts for the three deployment phases.

Every script prints a single JSON document on stdout so the deployer can
read the outcome without scraping text.
"""

from typing import TYPE_CHECKING

from .profile import NetworkAdapterSettings, SMBSettings, SharePermission

if TYPE_CHECKING:
    from .adapters import PhysicalAdapter


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values) -> str:
    return "@(" + ", ".join(ps_quote(v) for v in values) + ")"


# =============================================================================
# Phase 1: hostname
# =============================================================================

def set_hostname_script(new_name: str) -> str:
    """
    Rename the computer unless new_name is already the name it will boot with.

    The registry ComputerName value holds the name taking effect at the next
    restart and equals the current name when no rename is pending. Comparing
    against it alone means a pending rename to some other name is replaced,
    and a second deploy before restarting is still reported as unchanged.
    """
    return f'''
$Result = @{{
    Success = $false
    Changed = $false
    Current = $env:COMPUTERNAME
    RestartRequired = $false
}}
$NewName = {ps_quote(new_name)}

try {{
    $Pending = (Get-ItemProperty -Path 'HKLM:\\SYSTEM\\CurrentControlSet\\Control\\ComputerName\\ComputerName').ComputerName
    if ($Pending -ieq $NewName) {{
        $Result.RestartRequired = ($Result.Current -ine $NewName)
        $Result.Success = $true
    }} else {{
        Rename-Computer -NewName $NewName -Force -ErrorAction Stop
        $Result.Changed = $true
        $Result.RestartRequired = $true
        $Result.Success = $true
    }}
}} catch {{
    $Result.Error = $_.Exception.Message
}}

$Result | ConvertTo-Json
'''


# =============================================================================
# Phase 2: network adapters
# =============================================================================

LIST_ADAPTERS_SCRIPT = r'''
$Adapters = @(Get-NetAdapter -Physical | Sort-Object ifIndex | ForEach-Object {
    [PSCustomObject]@{
        Name = $_.Name
        InterfaceDescription = $_.InterfaceDescription
        InterfaceIndex = $_.ifIndex
        Status = [string]$_.Status
        MacAddress = $_.MacAddress
    }
})
ConvertTo-Json -InputObject $Adapters -Depth 3
'''


def configure_adapter_script(adapter: "PhysicalAdapter", settings: NetworkAdapterSettings) -> str:
    """Clear IPv4 addresses and routes on one adapter, then apply settings."""
    index = int(adapter.interface_index)

    if settings.dhcp:
        apply_block = f'''
    Set-NetIPInterface -InterfaceIndex {index} -Dhcp Enabled -ErrorAction Stop
    Set-DnsClientServerAddress -InterfaceIndex {index} -ResetServerAddresses
    $Result.Actions += "DHCP enabled"'''
    else:
        gateway_line = ""
        if settings.gateway:
            gateway_line = f"\n    $Params.DefaultGateway = {ps_quote(settings.gateway)}"
        if settings.dns_servers:
            dns_block = f'''
    Set-DnsClientServerAddress -InterfaceIndex {index} -ServerAddresses {ps_array(settings.dns_servers)}
    $Result.Actions += "DNS set"'''
        else:
            dns_block = f'''
    Set-DnsClientServerAddress -InterfaceIndex {index} -ResetServerAddresses'''
        apply_block = f'''
    Set-NetIPInterface -InterfaceIndex {index} -Dhcp Disabled -ErrorAction SilentlyContinue
    $Params = @{{
        InterfaceIndex = {index}
        IPAddress = {ps_quote(settings.ip_address)}
        PrefixLength = {settings.prefix_length}
        AddressFamily = 'IPv4'
        ErrorAction = 'Stop'
    }}{gateway_line}
    New-NetIPAddress @Params | Out-Null
    $Result.Actions += "Static address applied"{dns_block}'''

    return f'''
$Result = @{{
    Success = $false
    Adapter = {ps_quote(adapter.name)}
    Actions = @()
}}

try {{
    Get-NetAdapter -InterfaceIndex {index} -ErrorAction Stop | Out-Null
    Get-NetIPAddress -InterfaceIndex {index} -AddressFamily IPv4 -ErrorAction SilentlyContinue |
        Remove-NetIPAddress -Confirm:$false -ErrorAction SilentlyContinue
    Get-NetRoute -InterfaceIndex {index} -AddressFamily IPv4 -ErrorAction SilentlyContinue |
        Remove-NetRoute -Confirm:$false -ErrorAction SilentlyContinue
    $Result.Actions += "Cleared IPv4 configuration"
{apply_block}
    $Result.Success = $true
}} catch {{
    $Result.Error = $_.Exception.Message
}}

$Result | ConvertTo-Json
'''


# =============================================================================
# Phase 3: SMB share
# =============================================================================

_NEW_SHARE_ACCESS = {
    SharePermission.FULL: "-FullAccess",
    SharePermission.CHANGE: "-ChangeAccess",
    SharePermission.READ: "-ReadAccess",
}


def smb_share_script(smb: SMBSettings) -> str:
    """Create the project share, or update it when one of that name exists."""
    permission = SharePermission(smb.share_permissions)
    return f'''
$Result = @{{
    Success = $false
    Created = $false
    Updated = $false
}}
$Name = {ps_quote(smb.share_name)}
$Path = {ps_quote(smb.projects_path)}

try {{
    if (-not (Test-Path -LiteralPath $Path)) {{
        New-Item -ItemType Directory -Force -Path $Path | Out-Null
    }}

    $Existing = Get-SmbShare -Name $Name -ErrorAction SilentlyContinue
    if ($Existing -and $Existing.Path -ne $Path) {{
        Remove-SmbShare -Name $Name -Force -ErrorAction Stop
        $Existing = $null
    }}

    if ($Existing) {{
        Grant-SmbShareAccess -Name $Name -AccountName 'Everyone' -AccessRight {permission.value} -Force -ErrorAction Stop | Out-Null
        $Result.Updated = $true
    }} else {{
        New-SmbShare -Name $Name -Path $Path {_NEW_SHARE_ACCESS[permission]} 'Everyone' -ErrorAction Stop | Out-Null
        $Result.Created = $true
    }}
    $Result.Success = $true
}} catch {{
    $Result.Error = $_.Exception.Message
}}

$Result | ConvertTo-Json
'''

"""Static text rendered into the offline bundle."""
from typing import Iterable

from .models import BundleComponent

COMPONENT_DESCRIPTIONS = {
    BundleComponent.SOURCE: "Kubespray source tree ({version}) with its Python virtual environment",
    BundleComponent.RUNTIME_DEPS: "Python dependency cache (pip/)",
    BundleComponent.IMAGES: "Container images (kubespray/contrib/offline/container-images.tar.gz)",
    BundleComponent.REGISTRY_SNAPSHOT: "Registry server image (kubespray/contrib/offline/registry-latest.tar)",
    BundleComponent.FILES: "Binary files mirror (kubespray/contrib/offline/offline-files/)",
    BundleComponent.OS_PACKAGES_DEB: "Debian/Ubuntu system packages (os-packages/deb/)",
    BundleComponent.OS_PACKAGES_RPM: "RedHat/CentOS system packages (os-packages/rpm/)",
    BundleComponent.DOCS: "This deployment guide",
}

GUIDE_TEMPLATE = """# Kubespray Offline Deployment Guide

## Bundle contents

This bundle contains everything needed to deploy a Kubernetes {kube_version}
cluster without internet access:

{contents}

## Deployment steps

1. Copy this bundle to a machine inside the offline network.
2. Unpack it: `tar xzf {archive_name}`
3. List the control-plane and worker addresses in `offlinectl.yaml`.
4. Set the local registry and file server endpoints in the same file.
5. Run `offlinectl install`.

## Layout

```
kubespray-offline/
├── kubespray/                    # Kubespray source tree
├── pip/                          # Python dependency cache
├── os-packages/rpm/              # RedHat/CentOS system packages (optional)
├── os-packages/deb/              # Debian/Ubuntu system packages (optional)
├── bundle.yaml                   # Components included in this bundle
└── OFFLINE_DEPLOYMENT_GUIDE.md
```

## Notes

1. Target nodes need Python and SSH before the installer runs.
2. System packages are installed on each node from the matching family directory.
3. Review the generated inventory before deploying.
"""


def render_guide(version: str, kube_version: str, archive_name: str, components: Iterable[BundleComponent]) -> str:
    lines = []
    for index, component in enumerate(components, 1):
        description = COMPONENT_DESCRIPTIONS[component].format(version=version)
        lines.append(f"{index}. {description}")
    return GUIDE_TEMPLATE.format(
        kube_version=kube_version,
        archive_name=archive_name,
        contents="\n".join(lines) or "(no components)",
    )

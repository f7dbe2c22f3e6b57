"""
SharePoint Online REST client for the Site Compare Service.

Documentation: https://learn.microsoft.com/sharepoint/dev/sp-add-ins/working-with-lists-and-list-items-with-rest
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sitecompare.api.base import BaseClient
from sitecompare.compare.models import CatalogItem, Credentials, ItemType, Library
from sitecompare.compare.normalizer import relative_path_for
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)

DOCUMENT_LIBRARY_TEMPLATE = 101

LIST_FIELDS = "Id,Title,Hidden,ItemCount,BaseTemplate,RootFolder/ServerRelativeUrl"
ITEM_FIELDS = "Id,FileLeafRef,FileRef,FSObjType,Created,Modified,OData__UIVersionString,File/Length"


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as returned by SharePoint."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_version_count(value: Optional[str]) -> int:
    """Turn a UI version string such as "4.0" into a version count."""
    if not value:
        return 1
    try:
        return max(1, int(float(value)))
    except ValueError:
        return 1


class SharePointClient(BaseClient):
    """
    Client for the SharePoint REST API of one tenant.

    Authenticates with the FedAuth/rtFa cookies captured at login and
    exposes the catalog calls the comparison engine needs.
    """

    def __init__(
        self,
        tenant_domain: str,
        credentials: Credentials,
        timeout: int = 60,
        page_size: int = 2000,
    ):
        """
        Initialize SharePoint client.

        Args:
            tenant_domain: Tenant host (e.g., contoso.sharepoint.com)
            credentials: Cookies captured for the tenant
            timeout: Request timeout in seconds
            page_size: Items requested per page
        """
        super().__init__(f"https://{tenant_domain}", timeout=timeout)
        self.tenant_domain = tenant_domain
        self.page_size = page_size

        self.session.headers.update({
            "Accept": "application/json;odata=nometadata",
        })
        self.session.cookies.set("FedAuth", credentials.fed_auth, domain=tenant_domain)
        self.session.cookies.set("rtFa", credentials.rt_fa, domain=tenant_domain)

    def list_libraries(self, site_url: str) -> List[Library]:
        """
        Get the document libraries of a site.

        Args:
            site_url: Absolute site URL

        Returns:
            List of libraries (hidden ones included)
        """
        return self._get_lists(site_url, f"BaseTemplate eq {DOCUMENT_LIBRARY_TEMPLATE}")

    def list_lists(self, site_url: str) -> List[Library]:
        """
        Get every list of a site with its item count.

        Args:
            site_url: Absolute site URL

        Returns:
            Lists and libraries of any template (hidden ones included)
        """
        return self._get_lists(site_url)

    def _get_lists(self, site_url: str, odata_filter: Optional[str] = None) -> List[Library]:
        params = {"$select": LIST_FIELDS, "$expand": "RootFolder"}
        if odata_filter:
            params["$filter"] = odata_filter

        response = self.get(f"{site_url.rstrip('/')}/_api/web/lists", params=params)
        return [self.parse_list(raw) for raw in response.get("value", [])]

    @staticmethod
    def parse_list(raw: Dict[str, Any]) -> Library:
        """Parse a raw list entry into a Library."""
        return Library(
            id=raw.get("Id", ""),
            title=raw.get("Title", ""),
            hidden=bool(raw.get("Hidden", False)),
            item_count=int(raw.get("ItemCount", 0) or 0),
            server_relative_url=(raw.get("RootFolder") or {}).get("ServerRelativeUrl", ""),
            base_template=int(raw.get("BaseTemplate", DOCUMENT_LIBRARY_TEMPLATE) or 0),
        )

    def list_items(self, site_url: str, library: Library) -> List[CatalogItem]:
        """
        Get every file and folder in a library, following result pages.

        Args:
            site_url: Absolute site URL
            library: Library to enumerate

        Returns:
            List of catalog items
        """
        endpoint: Optional[str] = (
            f"{site_url.rstrip('/')}/_api/web/lists(guid'{library.id}')/items"
        )
        params: Optional[Dict[str, Any]] = {
            "$select": ITEM_FIELDS,
            "$expand": "File",
            "$top": self.page_size,
        }

        items: List[CatalogItem] = []
        pages = 0
        while endpoint:
            response = self.get(endpoint, params=params)
            pages += 1
            for raw in response.get("value", []):
                item = self.parse_item(raw, library, site_url)
                if item is not None:
                    items.append(item)

            # The next link already carries the query string
            endpoint = response.get("odata.nextLink") or response.get("@odata.nextLink")
            params = None

        logger.debug(
            "Scanned library",
            site_url=site_url,
            library=library.title,
            items=len(items),
            pages=pages
        )
        return items

    def parse_item(
        self,
        raw: Dict[str, Any],
        library: Library,
        site_url: str,
    ) -> Optional[CatalogItem]:
        """
        Parse a raw list item into a CatalogItem.

        Args:
            raw: Raw item data from SharePoint
            library: Library the item belongs to
            site_url: Absolute site URL

        Returns:
            CatalogItem or None if the item has no URL
        """
        file_ref = raw.get("FileRef")
        if not file_ref:
            return None

        is_folder = str(raw.get("FSObjType", "0")) == "1"
        file_info = raw.get("File") or {}

        return CatalogItem(
            relative_path=relative_path_for(file_ref, library.title, site_url),
            size_bytes=0 if is_folder else int(file_info.get("Length", 0) or 0),
            version_count=0 if is_folder else parse_version_count(raw.get("OData__UIVersionString")),
            last_modified_utc=parse_datetime(raw.get("Modified")),
            item_id=int(raw.get("Id", 0) or 0),
            file_name=raw.get("FileLeafRef", ""),
            item_type=ItemType.FOLDER if is_folder else ItemType.FILE,
            created_utc=parse_datetime(raw.get("Created")),
            server_relative_url=file_ref,
        )


def create_sharepoint_client(
    tenant_id: str,
    credentials: Credentials,
    timeout: int = 60,
    page_size: int = 2000,
) -> SharePointClient:
    """
    Build a client for a tenant.

    Tenants are identified by their SharePoint host name.
    """
    domain = tenant_id.replace("https://", "").replace("http://", "").strip("/")
    return SharePointClient(domain, credentials, timeout=timeout, page_size=page_size)

"""
Path normalization for matching documents across tenants.

Some migration tools replace characters that are illegal on the target side
with an underscore. Normalizing both sides the same way lets
``My*File.docx`` on the source match ``My_File.docx`` on the target.
"""

from typing import List
from urllib.parse import urlparse

# Characters migration tools substitute with "_"
SUBSTITUTED_CHARACTERS = '"*:<>?\\&#%{}~'

_SUBSTITUTION_TABLE = str.maketrans({c: "_" for c in SUBSTITUTED_CHARACTERS})


def normalize(path: str) -> str:
    """
    Map every substituted character in a path to an underscore.

    Args:
        path: Item path as reported by the remote side

    Returns:
        The normalized path; the input string is left untouched
    """
    return path.translate(_SUBSTITUTION_TABLE)


def comparison_key(path: str, use_normalization: bool) -> str:
    """
    Build the lookup key used to match an item across tenants.

    SharePoint URLs are case-insensitive, so keys are case-folded as well.
    """
    key = normalize(path) if use_normalization else path
    return key.casefold()


def server_relative_path(site_url: str) -> str:
    """
    Extract the server-relative path from a full site URL.

    "https://tenant.sharepoint.com/sites/MySite" -> "/sites/MySite"
    """
    try:
        path = urlparse(site_url.rstrip("/")).path
    except ValueError:
        return ""
    return path or "/"


def relative_path_for(server_relative_url: str, library_title: str, site_url: str) -> str:
    """
    Extract an item's path inside its library from its server-relative URL.

    ``/sites/site/Shared Documents/folder/file.docx`` becomes
    ``folder/file.docx``. The site path is stripped first and the next segment
    is taken as the library folder, which works even when the library's display
    title differs from its URL name. When the URL is not under the site path the
    library title (with and without spaces) is searched for instead.

    The path is not URL-decoded: file names may contain literal ``%XX``.

    Args:
        server_relative_url: Server-relative URL of the item
        library_title: Display title of the owning library
        site_url: Absolute URL of the site

    Returns:
        The in-library path; empty for the library root
    """
    lower_url = server_relative_url.lower()

    site_path = server_relative_path(site_url)
    if site_path:
        lower_site_path = site_path.lower().rstrip("/") + "/"
        if lower_url.startswith(lower_site_path):
            after_site = server_relative_url[len(lower_site_path):]
            first_slash = after_site.find("/")
            if 0 <= first_slash < len(after_site) - 1:
                return after_site[first_slash + 1:]
            return ""

    candidates: List[str] = [library_title.lower() + "/"]
    no_spaces = library_title.replace(" ", "").lower() + "/"
    if no_spaces != candidates[0]:
        candidates.append(no_spaces)

    for candidate in candidates:
        index = lower_url.rfind(candidate)
        if index < 0:
            continue
        if index == 0 or server_relative_url[index - 1] in ("/", " "):
            return server_relative_url[index + len(candidate):]

    return server_relative_url

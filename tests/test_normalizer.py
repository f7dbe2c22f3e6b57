"""Tests for path normalization and relative path extraction."""

import pytest

from sitecompare.compare.normalizer import (
    SUBSTITUTED_CHARACTERS,
    comparison_key,
    normalize,
    relative_path_for,
    server_relative_path,
)


class TestNormalize:
    """Test character substitution."""

    def test_replaces_substituted_characters(self):
        assert normalize("My*File.docx") == "My_File.docx"
        assert normalize('a"b:c<d>e?f') == "a_b_c_d_e_f"

    @pytest.mark.parametrize("char", list(SUBSTITUTED_CHARACTERS))
    def test_every_character_becomes_underscore(self, char):
        assert normalize(f"x{char}y") == "x_y"

    def test_leaves_other_characters_and_case_alone(self):
        assert normalize("Folder/Sub Folder/Report (v2).PDF") == "Folder/Sub Folder/Report (v2).PDF"

    def test_input_is_not_modified(self):
        path = "a#b"
        normalize(path)
        assert path == "a#b"


class TestComparisonKey:
    """Test lookup key construction."""

    def test_case_folded(self):
        assert comparison_key("Folder/File.DOCX", False) == "folder/file.docx"

    def test_normalization_applied_when_enabled(self):
        assert comparison_key("My*File.docx", True) == comparison_key("my_file.DOCX", True)

    def test_normalization_skipped_when_disabled(self):
        assert comparison_key("My*File.docx", False) != comparison_key("My_File.docx", False)


class TestServerRelativePath:

    def test_site_path(self):
        assert server_relative_path("https://contoso.sharepoint.com/sites/HR/") == "/sites/HR"

    def test_root_site(self):
        assert server_relative_path("https://contoso.sharepoint.com") == "/"


class TestRelativePathFor:
    """Test extraction of an item's path inside its library."""

    SITE = "https://contoso.sharepoint.com/sites/hr"

    def test_strips_site_and_library_segment(self):
        path = relative_path_for("/sites/hr/Shared Documents/folder/file.docx", "Documents", self.SITE)
        assert path == "folder/file.docx"

    def test_site_path_is_case_insensitive_but_result_keeps_case(self):
        path = relative_path_for("/Sites/HR/Shared Documents/Folder/File.docx", "Documents", self.SITE)
        assert path == "Folder/File.docx"

    def test_library_root_is_empty(self):
        assert relative_path_for("/sites/hr/Shared Documents", "Documents", self.SITE) == ""

    def test_falls_back_to_library_title(self):
        path = relative_path_for("/other/Documents/a/b.txt", "Documents", self.SITE)
        assert path == "a/b.txt"

    def test_falls_back_to_library_title_without_spaces(self):
        path = relative_path_for("/other/SharedDocuments/b.txt", "Shared Documents", self.SITE)
        assert path == "b.txt"

    def test_unmatched_url_is_returned_unchanged(self):
        assert relative_path_for("/elsewhere/x.txt", "Documents", self.SITE) == "/elsewhere/x.txt"

    def test_percent_sequences_are_not_decoded(self):
        path = relative_path_for("/sites/hr/Docs/100%25.txt", "Docs", self.SITE)
        assert path == "100%25.txt"

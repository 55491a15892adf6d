"""Tests for package layout discovery and content loading."""

import json
import zipfile

import pytest

from Adaptorium.errors import (
    HierarchyError,
    InvalidLanguageError,
    MissingConfigError,
    MissingCourseError,
    MissingCoursePathError,
    MissingPackageError,
    MultipleCoursesError,
    PackageTooLargeError,
)
from Adaptorium.package import (
    find_course_dir,
    list_languages,
    load_config,
    load_course_data,
    load_package_manifest,
    resolve_language,
    unwrap_nested,
    unzip_package,
)


class TestCourseDirectory:
    def test_src_course(self, package):
        """Test the standard src/course location is found."""
        assert find_course_dir(package.root) == package.course_dir

    def test_missing(self, tmp_path):
        """Test a package without any course directory is rejected."""
        with pytest.raises(MissingCoursePathError):
            find_course_dir(tmp_path)

    def test_more_than_one(self, package):
        """Test a package carrying both src and build courses is ambiguous."""
        (package.root / "build" / "course").mkdir(parents=True)
        with pytest.raises(MultipleCoursesError) as exc_info:
            find_course_dir(package.root)
        assert exc_info.value.data["paths"] == ["src/course", "build/course"]


class TestLanguage:
    def test_languages_are_subdirectories(self, package):
        """Test each directory under the course is a language."""
        (package.course_dir / "fr").mkdir()
        assert list_languages(package.course_dir) == ["en", "fr"]

    def test_default_language(self):
        """Test the config default is used when no language is requested."""
        assert resolve_language({"_defaultLanguage": "en"}, ["en", "fr"]) == "en"
        assert resolve_language({"_defaultLanguage": "en"}, ["en", "fr"], "fr") == "fr"

    def test_unknown_language(self):
        """Test a language without a directory is rejected."""
        with pytest.raises(InvalidLanguageError) as exc_info:
            resolve_language({}, ["en"], "de")
        assert exc_info.value.data == {"language": "de", "available": ["en"]}


class TestManifests:
    def test_config_must_be_readable(self, package):
        """Test a broken config.json surfaces as MissingConfigError."""
        (package.course_dir / "config.json").write_text("{nope")
        with pytest.raises(MissingConfigError):
            load_config(package.course_dir)

    def test_package_manifest(self, package):
        """Test package.json is validated and returned."""
        assert load_package_manifest(package.root)["version"] == "5.1.0"

    def test_package_manifest_missing_version(self, package):
        """Test a package.json without a version fails its contract."""
        (package.root / "package.json").write_text(json.dumps({"name": "adapt_framework"}))
        with pytest.raises(MissingPackageError):
            load_package_manifest(package.root)

    def test_package_manifest_absent(self, tmp_path):
        """Test a package without package.json is rejected."""
        with pytest.raises(MissingPackageError):
            load_package_manifest(tmp_path)


class TestLoadCourseData:
    def test_loads_every_document(self, package):
        """Test course, config and content objects are loaded and tagged with the language."""
        content = load_course_data(package.course_dir, "en", enabled_plugins=["adapt-contrib-text"])
        assert content.course["title"] == "Demo Course"
        assert content.course["_lang"] == "en"
        assert content.config["_type"] == "config"
        assert content.config["_enabledPlugins"] == ["adapt-contrib-text"]
        assert sorted(content.content_objects) == ["a-05", "b-05", "c-05", "c-10", "co-05"]
        assert all(co["_lang"] == "en" for co in content.content_objects.values())

    def test_friendly_ids_are_reinstated(self, package):
        """Test package ids become friendly ids unless a document already has one."""
        package.content[0]["_friendlyId"] = "intro"
        package.write()
        content = load_course_data(package.course_dir, "en")
        assert content.course["_friendlyId"] == "course"
        assert content.content_objects["co-05"]["_friendlyId"] == "intro"
        assert content.content_objects["c-10"]["_friendlyId"] == "c-10"
        assert "_friendlyId" not in content.config

    def test_asset_metadata_is_not_content(self, package):
        """Test assets.json is not mistaken for a content file."""
        (package.course_dir / "en" / "assets.json").write_text(json.dumps({"logo.png": {}}))
        content = load_course_data(package.course_dir, "en")
        assert len(content.content_objects) == 5

    def test_missing_course(self, package):
        """Test a language without course.json is rejected."""
        (package.course_dir / "en" / "course.json").unlink()
        with pytest.raises(MissingCourseError):
            load_course_data(package.course_dir, "en")

    def test_duplicate_ids(self, package):
        """Test the same id in two files is a structural error."""
        package.content.append({"_id": "c-05", "_type": "block", "_parentId": "a-05"})
        package.write()
        with pytest.raises(HierarchyError):
            load_course_data(package.course_dir, "en")

    def test_course_in_content_list(self, package):
        """Test a course document inside a content array is rejected."""
        package.content.append({"_id": "x", "_type": "course"})
        package.write()
        with pytest.raises(HierarchyError):
            load_course_data(package.course_dir, "en")


class TestArchives:
    def test_unzip(self, package, tmp_path):
        """Test a zipped package extracts beside the archive."""
        archive = tmp_path / "course.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            for f in package.root.rglob("*"):
                if f.is_file():
                    zf.write(f, f.relative_to(package.root).as_posix())
        dest = unzip_package(archive)
        assert dest == tmp_path / "course_unzip"
        assert find_course_dir(dest) == dest / "src" / "course"

    def test_zip_slip_rejected(self, tmp_path):
        """Test members escaping the extraction root are refused."""
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.txt", "x")
        with pytest.raises(MissingCoursePathError):
            unzip_package(archive)
        assert not (tmp_path / "escape.txt").exists()

    def test_archive_over_size_limit(self, tmp_path):
        """Test an archive larger than the limit is refused before extraction."""
        archive = tmp_path / "big.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("package.json", "x" * 2048)
        with pytest.raises(PackageTooLargeError) as ei:
            unzip_package(archive, max_size=16)
        assert ei.value.code == "FW_IMPORT_TOO_LARGE"
        assert not (tmp_path / "big_unzip").exists()

    def test_contents_over_size_limit(self, tmp_path):
        """Test compressed members are measured by their unpacked size."""
        archive = tmp_path / "bomb.zip"
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("package.json", "0" * 100_000)
        assert archive.stat().st_size < 10_000
        with pytest.raises(PackageTooLargeError) as ei:
            unzip_package(archive, max_size=10_000)
        assert ei.value.data["size"] == 100_000
        assert not (tmp_path / "bomb_unzip").exists()

    def test_unwrap_single_nested_directory(self, tmp_path):
        """Test a package zipped inside one folder is lifted to the top."""
        root = tmp_path / "upload"
        nested = root / "my-course"
        (nested / "src" / "course").mkdir(parents=True)
        (nested / "package.json").write_text("{}")
        (root / "__MACOSX").mkdir()

        new_root = unwrap_nested(root)

        assert new_root == tmp_path / "upload_2"
        assert (new_root / "package.json").exists()
        assert not root.exists()

    def test_unwrap_leaves_flat_packages(self, package):
        """Test a package already at the root is returned unchanged."""
        assert unwrap_nested(package.root) == package.root

"""Tests for provider helpers and HTTP-backed providers over httpx.MockTransport."""

import gzip
import hashlib
import io
import zipfile
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from biodata_manager.core.errors import InvalidSpecifier, ProviderFetchFailed
from biodata_manager.core.models import DatasetKind, ResolvedTarget
from biodata_manager.providers.base import ProviderRegistry, ProviderResult
from biodata_manager.providers.ena import SrrProvider, fastq_to_fasta
from biodata_manager.providers.geo import (
    Expression10xProvider,
    ExpressionProvider,
    extract_organism,
    extract_supplementary_urls,
    normalize_url,
    series_prefix,
    soft_url,
)
from biodata_manager.providers.knowledge import GO_BASIC_URL, GoProvider, parse_go_header
from biodata_manager.providers.ncbi import DEFAULT_INCLUDE, GenomeProvider, map_include
from biodata_manager.providers.rcsb import ProteinProvider
from biodata_manager.providers.uniprot import UniprotProvider
from biodata_manager.utils.files import extract_zip_safe

SOFT = """^SERIES = GSE102902
!Series_title = Example series
!Series_organism_ch1 = Homo sapiens
!Series_supplementary_file = ftp://ftp.ncbi.nlm.nih.gov/geo/series/GSE102nnn/GSE102902/suppl/GSE102902_barcodes.tsv.gz
!Series_supplementary_file = ftp://ftp.ncbi.nlm.nih.gov/geo/series/GSE102nnn/GSE102902/suppl/GSE102902_matrix.mtx.gz
!Series_supplementary_file = ftp://ftp.ncbi.nlm.nih.gov/geo/series/GSE102nnn/GSE102902/suppl/GSE102902_RAW.tar
!Sample_supplementary_file_1 = NONE
"""

OBO_HEADER = "format-version: 1.2\ndata-version: releases/2024-06-17\ndate: 17:06:2024 12:00\n\n[Term]\nid: GO:0000001\n"


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestGeoHelpers:
    def test_series_prefix(self) -> None:
        assert series_prefix("GSE102902") == "GSE102nnn"
        assert series_prefix("GSE1234") == "GSE1nnn"
        assert series_prefix("GSE12") == "GSEnnn"

    def test_soft_url(self) -> None:
        assert soft_url("gse102902") == (
            "https://ftp.ncbi.nlm.nih.gov/geo/series/GSE102nnn/GSE102902/soft/GSE102902_family.soft.gz"
        )

    def test_supplementary_urls_and_organism(self) -> None:
        urls = extract_supplementary_urls(SOFT)
        assert len(urls) == 3
        assert normalize_url(urls[0]).startswith("https://ftp.ncbi.nlm.nih.gov/geo/series/")
        assert extract_organism(SOFT) == "Homo sapiens"


class TestKnowledgeHelpers:
    def test_parse_go_header(self) -> None:
        assert parse_go_header(OBO_HEADER) == ("releases/2024-06-17", "17:06:2024 12:00")
        assert parse_go_header("[Term]\nid: GO:1\n") == (None, None)


class TestNcbiHelpers:
    def test_map_include(self) -> None:
        assert map_include(DEFAULT_INCLUDE) == ["GENOME_FASTA", "GENOME_GFF"]
        with pytest.raises(InvalidSpecifier):
            map_include(["genome", "bogus"])

    def test_extract_zip_rejects_escaping_members(self, tmp_path: Path) -> None:
        archive = tmp_path / "bundle.zip"
        with zipfile.ZipFile(archive, "w") as bundle:
            bundle.writestr("ncbi_dataset/data/genome.fna", ">chr1\nACGT\n")
            bundle.writestr("../evil.txt", "nope")

        with pytest.raises(ValueError):
            extract_zip_safe(archive, tmp_path / "out")
        assert not (tmp_path / "evil.txt").exists()

    def test_extract_zip_lists_members(self, tmp_path: Path) -> None:
        archive = tmp_path / "bundle.zip"
        with zipfile.ZipFile(archive, "w") as bundle:
            bundle.writestr("ncbi_dataset/data/genome.fna", ">chr1\nACGT\n")
            bundle.writestr("README.md", "readme")

        files = extract_zip_safe(archive, tmp_path / "out")

        assert sorted(files) == ["README.md", "ncbi_dataset/data/genome.fna"]
        assert (tmp_path / "out" / "ncbi_dataset" / "data" / "genome.fna").is_file()


class TestFastqToFasta:
    def test_converts_records(self, tmp_path: Path) -> None:
        fastq = tmp_path / "r.fastq.gz"
        with gzip.open(fastq, "wt") as handle:
            handle.write("@r1 desc\nACGT\n+\nIIII\n@r2\nTTGG\n+\nIIII\n")

        records = fastq_to_fasta(fastq, tmp_path / "r.fasta.gz")

        assert records == 2
        with gzip.open(tmp_path / "r.fasta.gz", "rt") as handle:
            assert handle.read() == ">r1 desc\nACGT\n>r2\nTTGG\n"


class TestHttpProviders:
    @pytest.mark.asyncio
    async def test_go_records_release(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GO_BASIC_URL
            return httpx.Response(200, text=OBO_HEADER)

        target = ResolvedTarget.for_kind(DatasetKind.GO, "current")
        result = await GoProvider(_client(handler)).fetch(target, tmp_path)

        assert result.files == ["go-basic.obo"]
        assert result.metadata["version"] == "releases/2024-06-17"
        assert result.metadata["registry"] == "go"

    @pytest.mark.asyncio
    async def test_expression_downloads_soft_family(self, tmp_path: Path) -> None:
        payload = gzip.compress(SOFT.encode())
        provider = ExpressionProvider(_client(lambda request: httpx.Response(200, content=payload)))

        result = await provider.fetch(ResolvedTarget.for_kind(DatasetKind.EXPRESSION, "GSE102902"), tmp_path)

        assert result.files == ["GSE102902_family.soft.gz"]
        assert result.metadata["organism"] == "Homo sapiens"
        assert result.metadata["bundle_format"] == "soft"

    @pytest.mark.asyncio
    async def test_expression10x_keeps_only_count_files(self, tmp_path: Path) -> None:
        soft = gzip.compress(SOFT.encode())
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.path)
            if request.url.path.endswith(".soft.gz"):
                return httpx.Response(200, content=soft)
            return httpx.Response(200, content=b"bundle")

        files_dir = tmp_path / "files"
        files_dir.mkdir()
        target = ResolvedTarget.for_kind(DatasetKind.EXPRESSION10X, "GSE102902")
        result = await Expression10xProvider(_client(handler)).fetch(target, files_dir)

        assert result.files == ["GSE102902_barcodes.tsv.gz", "GSE102902_matrix.mtx.gz"]
        assert result.metadata["bundle_format"] == "mtx"
        assert result.metadata["n_bundles"] == 1
        assert not any(path.endswith("_RAW.tar") for path in requested)

    @pytest.mark.asyncio
    async def test_protein_structure_and_entry_summary(self, tmp_path: Path, fast_rate_limits: None) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "files.rcsb.org":
                assert request.url.path == "/download/6VXX.pdb"
                return httpx.Response(200, text="HEADER    VIRAL PROTEIN\n")
            return httpx.Response(
                200,
                json={
                    "struct": {"title": "SARS-CoV-2 spike glycoprotein"},
                    "exptl": [{"method": "ELECTRON MICROSCOPY"}],
                    "rcsb_entry_info": {"resolution_combined": [2.8]},
                    "rcsb_accession_info": {"deposit_date": "2020-02-10", "initial_release_date": "2020-03-11"},
                },
            )

        target = ResolvedTarget.for_kind(DatasetKind.PROTEIN, "6vxx", "pdb")
        result = await ProteinProvider(_client(handler)).fetch(target, tmp_path)

        assert result.files == ["6VXX.pdb"]
        assert result.metadata["method"] == "ELECTRON MICROSCOPY"
        assert result.metadata["resolution"] == 2.8
        assert result.metadata["format"] == "pdb"

    @pytest.mark.asyncio
    async def test_uniprot_entry_and_fasta(self, tmp_path: Path, fast_rate_limits: None) -> None:
        entry = {
            "primaryAccession": "P0DTC2",
            "proteinDescription": {"recommendedName": {"fullName": {"value": "Spike glycoprotein"}}},
            "genes": [{"geneName": {"value": "S"}, "synonyms": [{"value": "2"}]}],
            "organism": {"scientificName": "Severe acute respiratory syndrome coronavirus 2"},
            "sequence": {"length": 1273},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(".json"):
                return httpx.Response(200, json=entry)
            return httpx.Response(200, text=">sp|P0DTC2|SPIKE_SARS2\nMFVFLVLLPLVSSQ\n")

        target = ResolvedTarget.for_kind(DatasetKind.UNIPROT, "p0dtc2")
        result = await UniprotProvider(_client(handler)).fetch(target, tmp_path)

        assert result.files == ["P0DTC2.fasta", "P0DTC2.json"]
        assert (tmp_path / "P0DTC2.fasta").read_text().startswith(">sp|P0DTC2")
        assert result.metadata["protein_name"] == "Spike glycoprotein"
        assert result.metadata["gene_names"] == ["2", "S"]
        assert result.metadata["sequence_length"] == 1273

    @pytest.mark.asyncio
    async def test_genome_package_is_extracted(self, tmp_path: Path, fast_rate_limits: None) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as bundle:
            bundle.writestr("ncbi_dataset/data/GCF_000001405.40/genomic.gff", "##gff-version 3\n")
            bundle.writestr("ncbi_dataset/data/GCF_000001405.40/chr1.fna", ">chr1\nACGT\n")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params.get_list("include_annotation_type") == ["GENOME_FASTA", "GENOME_GFF"]
            return httpx.Response(200, content=buffer.getvalue())

        files_dir = tmp_path / "files"
        files_dir.mkdir()
        target = ResolvedTarget.for_kind(DatasetKind.GENOME, "GCF_000001405.40")
        result = await GenomeProvider(_client(handler)).fetch(target, files_dir)

        assert sorted(result.files) == [
            "ncbi_dataset/data/GCF_000001405.40/chr1.fna",
            "ncbi_dataset/data/GCF_000001405.40/genomic.gff",
        ]
        assert not (tmp_path / "GCF_000001405.40.zip").exists()

    @pytest.mark.asyncio
    async def test_srr_fasta_conversion(self, tmp_path: Path, fast_rate_limits: None) -> None:
        reads = gzip.compress(b"@SRR1.1\nACGT\n+\nIIII\n")
        md5 = hashlib.md5(reads).hexdigest()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/filereport"):
                return httpx.Response(
                    200,
                    text=f"run_accession\tfastq_ftp\tfastq_md5\nSRR1\tftp.sra.ebi.ac.uk/vol1/SRR1.fastq.gz\t{md5}\n",
                )
            assert request.url.scheme == "https"
            return httpx.Response(200, content=reads)

        target = ResolvedTarget.for_kind(DatasetKind.SRR, "SRR1", "fasta")
        result = await SrrProvider(_client(handler)).fetch(target, tmp_path)

        assert result.files == ["SRR1.fasta.gz"]
        assert not (tmp_path / "SRR1.fastq.gz").exists()
        assert result.metadata["layout"] == "single"

    @pytest.mark.asyncio
    async def test_srr_checksum_mismatch(self, tmp_path: Path, fast_rate_limits: None) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/filereport"):
                return httpx.Response(
                    200, text="run_accession\tfastq_ftp\tfastq_md5\nSRR1\tftp.sra.ebi.ac.uk/SRR1.fastq.gz\t0000\n"
                )
            return httpx.Response(200, content=b"truncated")

        with pytest.raises(ProviderFetchFailed):
            await SrrProvider(_client(handler)).fetch(ResolvedTarget.for_kind(DatasetKind.SRR, "SRR1"), tmp_path)


class _StubProvider:
    registry = "stub"

    def __init__(self, result: ProviderResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


class TestProviderRegistry:
    TARGET = ResolvedTarget.for_kind(DatasetKind.PROTEIN, "6VXX")

    @pytest.mark.asyncio
    async def test_errors_become_fetch_failures(self, tmp_path: Path) -> None:
        registry = ProviderRegistry({DatasetKind.PROTEIN: _StubProvider(error=ValueError("bad payload"))})
        with pytest.raises(ProviderFetchFailed) as exc_info:
            await registry.fetch(self.TARGET, tmp_path)
        assert exc_info.value.context["registry"] == "stub"

    @pytest.mark.asyncio
    async def test_empty_file_set_is_a_failure(self, tmp_path: Path) -> None:
        registry = ProviderRegistry({DatasetKind.PROTEIN: _StubProvider(result=ProviderResult(files=[]))})
        with pytest.raises(ProviderFetchFailed):
            await registry.fetch(self.TARGET, tmp_path)

    def test_lookup(self) -> None:
        registry = ProviderRegistry({DatasetKind.PROTEIN: _StubProvider()})
        assert DatasetKind.PROTEIN in registry
        assert registry.registry_name(DatasetKind.GENOME) is None
        with pytest.raises(ProviderFetchFailed):
            registry.get(DatasetKind.GENOME)

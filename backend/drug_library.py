# drug_library.py
from types import MappingProxyType
from typing import Tuple

from models import DrugProfile, PKParameters, TDMTargets, TargetRange, DrugNotFoundError

class DRUG_LIBRARY:
    """
    The Antibiotic Formulary.
    Population PK reference values for critically ill adults on CRRT.
    Read-only: profiles are frozen and the table is a mapping proxy.
    """
    SPECS = MappingProxyType({
        "vancomycin": DrugProfile(
            name="Vancomycin",
            pk=PKParameters(
                standard_dose_mg=1000, interval_h=12,
                vd_l_per_kg=0.7, protein_binding=0.1,
                crrt_clearance_l_h=1.2,  # Roberts et al. 2012 (1.0-1.4 L/h)
                half_life_h=6, molecular_weight=1485, log_p=-3.1,
                bioavailability=1.0,
            ),
            references=("Roberts et al. 2012", "Rybak et al. 2020"),
            mic_breakpoints=MappingProxyType({"MRSA": 2, "CoNS": 4, "Enterococcus": 4}),
            dosing_suggestions=(
                "Load with 25-30 mg/kg, then 15-20 mg/kg q12h",
                "Target trough 15-20 mg/L for serious infections",
                "Consider continuous infusion for hemodynamically unstable patients",
            ),
            tdm_targets=TDMTargets(
                trough=TargetRange(15, 20, "mg/L"),
                auc=TargetRange(400, 600, "mg·h/L"),
            ),
            sieving_coefficient_override=0.8,
        ),
        "meropenem": DrugProfile(
            name="Meropenem",
            pk=PKParameters(
                standard_dose_mg=1000, interval_h=8,
                vd_l_per_kg=0.25, protein_binding=0.02,
                crrt_clearance_l_h=2.1,  # Seyler et al. 2011 (1.8-2.4 L/h)
                hepatic_clearance_l_h=0.4,
                half_life_h=4, molecular_weight=383, log_p=-0.6,
            ),
            references=("Seyler et al. 2011", "Ulldemolins et al. 2015"),
            mic_breakpoints=MappingProxyType({"P. aeruginosa": 2, "K. pneumoniae": 1, "A. baumannii": 2}),
            dosing_suggestions=(
                "Standard dose 1g q8h, increase to 2g q8h for resistant organisms",
                "Consider extended infusion (3-4 hours) to optimize %T>MIC",
                "Target 40-50% T>MIC for bacteriostatic effect",
            ),
            tdm_targets=TDMTargets(percent_time_above_mic=TargetRange(40, 100, "%")),
            ecmo_clearance_override=1.0,  # Shekar et al. 2014: no significant sequestration
        ),
        "piperacillintazobactam": DrugProfile(
            name="Piperacillin-Tazobactam",
            pk=PKParameters(
                standard_dose_mg=4000, interval_h=8,
                vd_l_per_kg=0.18, protein_binding=0.3,
                crrt_clearance_l_h=1.8,  # Arzuaga et al. 2005 (1.5-2.1 L/h)
                hepatic_clearance_l_h=0.6,
                half_life_h=3.5, molecular_weight=517, log_p=0.3,
            ),
            references=("Arzuaga et al. 2005", "Roberts et al. 2014"),
            mic_breakpoints=MappingProxyType({"P. aeruginosa": 16, "E. coli": 8, "K. pneumoniae": 8}),
            dosing_suggestions=(
                "4.5g q8h standard, may increase to q6h for severe infections",
                "Extended infusion recommended (4 hours)",
                "Target 50% T>MIC for optimal efficacy",
            ),
            tdm_targets=TDMTargets(percent_time_above_mic=TargetRange(50, 100, "%")),
        ),
        "cefepime": DrugProfile(
            name="Cefepime",
            pk=PKParameters(
                standard_dose_mg=2000, interval_h=12,
                vd_l_per_kg=0.2, protein_binding=0.2,
                crrt_clearance_l_h=1.6,  # Malone et al. 2001 (1.4-1.8 L/h)
                hepatic_clearance_l_h=0.3,
                half_life_h=5, molecular_weight=481, log_p=-0.1,
            ),
            references=("Malone et al. 2001", "Chapuis et al. 2004"),
            mic_breakpoints=MappingProxyType({"P. aeruginosa": 8, "K. pneumoniae": 2, "E. coli": 1}),
            dosing_suggestions=(
                "2g q12h standard dosing",
                "May require q8h for resistant pathogens",
                "Target 60-70% T>MIC for optimal killing",
            ),
            tdm_targets=TDMTargets(percent_time_above_mic=TargetRange(60, 100, "%")),
        ),
        "linezolid": DrugProfile(
            name="Linezolid",
            pk=PKParameters(
                standard_dose_mg=600, interval_h=12,
                vd_l_per_kg=0.65, protein_binding=0.31,
                crrt_clearance_l_h=0.5,  # Swoboda et al. 2010 (0.4-0.6 L/h)
                hepatic_clearance_l_h=2.8,  # Primarily non-renal
                half_life_h=8, molecular_weight=337, log_p=0.55,
                absorption_rate_ka=1.8, bioavailability=1.0,
            ),
            references=("Swoboda et al. 2010", "Meyer et al. 2005"),
            mic_breakpoints=MappingProxyType({"MRSA": 4, "VRE": 2, "CoNS": 4}),
            dosing_suggestions=(
                "600mg q12h standard (minimal CRRT clearance)",
                "No dose adjustment typically needed",
                "Target trough 2-7 mg/L to balance efficacy and thrombocytopenia",
            ),
            tdm_targets=TDMTargets(
                trough=TargetRange(2, 7, "mg/L"),
                auc=TargetRange(160, 300, "mg·h/L"),
            ),
        ),
    })

    ALIASES = MappingProxyType({
        "piptazo": "piperacillintazobactam",
        "zosyn": "piperacillintazobactam",
        "tazocin": "piperacillintazobactam",
        "vanco": "vancomycin",
        "mero": "meropenem",
    })

    @staticmethod
    def normalize(name: str) -> str:
        key = "".join(ch for ch in name.lower() if ch not in " -_/")
        return DRUG_LIBRARY.ALIASES.get(key, key)

    @staticmethod
    def lookup(name: str) -> DrugProfile:
        if not name:
            raise DrugNotFoundError(str(name))
        profile = DRUG_LIBRARY.SPECS.get(DRUG_LIBRARY.normalize(name))
        if profile is None:
            raise DrugNotFoundError(name)
        return profile

    @staticmethod
    def names() -> Tuple[str, ...]:
        return tuple(profile.name for profile in DRUG_LIBRARY.SPECS.values())

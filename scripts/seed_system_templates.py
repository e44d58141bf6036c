"""
Write the built-in English/Spanish templates to the templates table as
system templates (organization_id NULL), so operators can edit them there.
Existing system templates are left alone unless --force is given.
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from serviceai.config import settings
from serviceai.notifications import DEFAULT_TEMPLATES
from serviceai.persistence import SupabasePersistence


async def seed_system_templates(force: bool):
    if not settings.supabase_url or not settings.supabase_service_role_key:
        print("❌ Error: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env")
        return 1

    persistence = SupabasePersistence()
    created, skipped = 0, 0
    for (key, language), template in sorted(DEFAULT_TEMPLATES.items(), key=lambda item: (item[0][0], item[0][1].value)):
        existing = await persistence.get_template(None, key, language)
        if existing and not force:
            print(f"⏭️  {key} ({language.value}) already exists (v{existing.version})")
            skipped += 1
            continue
        if existing:
            template = template.model_copy(update={"id": existing.id, "version": existing.version + 1})
        await persistence.upsert_template(template)
        print(f"✅ {key} ({language.value})")
        created += 1

    print(f"\nDone: {created} written, {skipped} skipped")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed system SMS templates")
    parser.add_argument("--force", action="store_true", help="Overwrite existing system templates")
    args = parser.parse_args()
    sys.exit(asyncio.run(seed_system_templates(args.force)))

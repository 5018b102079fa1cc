import unittest

from sqlalchemy import text

import rental_fixtures as fx

from scripts import db_overview


class DbOverviewTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = fx.make_session_factory()
        self.db = factory()
        self.customer = fx.add_customer(self.db)
        self.product = fx.add_product(self.db, stock=4)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _by_name(self, results):
        return {row.name: row for row in results}

    def test_schema_matches_expected_tables_and_columns(self):
        existence = db_overview.run_existence_checks(self.engine)
        self.assertTrue(all(row.ok for row in existence), [row for row in existence if not row.ok])
        columns = db_overview.run_column_checks(self.engine)
        self.assertTrue(all(row.ok for row in columns), [row for row in columns if not row.ok])

    def test_clean_database_passes_integrity_checks(self):
        rental = fx.create_rental(self.db, self.customer, [(self.product, 2)])
        fx.move_to_collecting(self.db, rental)
        results = db_overview.run_integrity_checks(self.engine)
        self.assertTrue(results)
        self.assertTrue(all(row.ok for row in results), [row for row in results if not row.ok])

    def test_integrity_checks_flag_bad_rows(self):
        rental = fx.create_rental(self.db, self.customer, [(self.product, 2)])
        fx.move_to_collecting(self.db, rental)
        self.db.execute(text("UPDATE Products SET TotalStock = -1"))
        self.db.execute(text("UPDATE RentalChecklist SET QuantityCollected = 9"))
        self.db.execute(text("UPDATE Rentals SET Status = 'finished'"))
        self.db.commit()

        results = self._by_name(db_overview.run_integrity_checks(self.engine))
        self.assertFalse(results["products:negative_stock"].ok)
        self.assertFalse(results["checklist:over_collected"].ok)
        self.assertFalse(results["rentals:finished_with_open_checklist"].ok)
        self.assertTrue(results["rentals:confirmed_without_payment"].ok)

    def test_main_requires_a_database_url(self):
        self.assertEqual(db_overview.main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
